"""Service protocols (interfaces) for swappable backends.

Uses typing.Protocol for structural subtyping (duck typing with type safety).
Implementations don't need to inherit - they just need to have matching methods.
"""

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ad_batch.services.generation_client import TaskStatus


class GenerationClientProtocol(Protocol):
    """Interface for external image generation providers (KIE.AI, test fakes)."""

    async def submit(self, variant: dict[str, Any], params: dict[str, Any]) -> str:
        """Start generating one variant.

        Args:
            variant: Style descriptor of the item being generated
            params: Job-level inputs (source image, quality, product analysis)

        Returns:
            Opaque provider task handle
        """
        ...

    async def status(self, task_id: str) -> "TaskStatus":
        """Check a previously submitted task.

        Args:
            task_id: Handle returned by submit()

        Returns:
            TaskStatus with status, and result_ref or error when terminal
        """
        ...

    async def aclose(self) -> None:
        """Release transport resources."""
        ...
