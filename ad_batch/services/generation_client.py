"""KIE.AI image-to-image generation client.

Generation is asynchronous on the provider side: ``submit`` creates a task and
returns its id, ``status`` reports on it. Anything other than a well-formed
``code == 200`` response is surfaced as ProviderError.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from ad_batch.core.exceptions import ProviderError

logger = logging.getLogger(__name__)

CREATE_TASK_ENDPOINT = "/api/v1/jobs/createTask"
RECORD_INFO_ENDPOINT = "/api/v1/jobs/recordInfo"

TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

# Provider state -> TaskStatus.status
_STATE_MAP = {
    "waiting": TASK_PENDING,
    "queuing": TASK_PENDING,
    "generating": TASK_PROCESSING,
    "success": TASK_COMPLETED,
    "fail": TASK_FAILED,
}

ASPECT_RATIO_DIMENSIONS: dict[str, tuple[int, int]] = {
    "1:1": (1024, 1024),
    "16:9": (1024, 576),
    "9:16": (576, 1024),
    "4:3": (1024, 768),
    "3:4": (768, 1024),
    "4:5": (1024, 1280),
    "5:4": (1280, 1024),
}

QUALITY_MULTIPLIERS = {"1K": 1.0, "2K": 2.0, "4K": 4.0}

_PRODUCT_PATTERN = re.compile(r"\{product\}|product", re.IGNORECASE)


@dataclass
class TaskStatus:
    """Provider-side state of one generation task."""

    status: str  # pending | processing | completed | failed
    result_ref: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TASK_COMPLETED, TASK_FAILED)


def output_dimensions(aspect_ratio: str, quality: str) -> tuple[int, int]:
    """Pixel size for an aspect ratio at a quality tier (unknown ratios fall back to 1:1)."""
    width, height = ASPECT_RATIO_DIMENSIONS.get(aspect_ratio, ASPECT_RATIO_DIMENSIONS["1:1"])
    multiplier = QUALITY_MULTIPLIERS.get(quality, QUALITY_MULTIPLIERS["2K"])
    return round(width * multiplier), round(height * multiplier)


def customize_prompt(prompt: str, product_analysis: dict[str, Any] | None) -> str:
    """Fill a style prompt in with what was detected about the product.

    Occurrences of "product" / "{product}" become the product name, then the
    product colours and key features are appended when known.
    """
    if not product_analysis:
        return prompt

    product_name = product_analysis.get("productName") or product_analysis.get("product_name") or "product"
    colors = product_analysis.get("colors") or []
    features = product_analysis.get("keyFeatures") or product_analysis.get("key_features") or []

    customized = _PRODUCT_PATTERN.sub(lambda _: product_name, prompt)
    if colors:
        customized += f" Product colors: {', '.join(colors)}."
    if features:
        customized += f" Key features: {', '.join(features)}."
    return customized


class KieGenerationClient:
    """Async client for the KIE.AI jobs API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai",
        model: str = "google/nano-banana-edit",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: Bearer token for the provider
            base_url: Provider API root
            model: Model identifier sent with every task
            timeout: Per-request timeout in seconds
            http_client: Pre-built client (tests inject one with a MockTransport)
        """
        self.model = model
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, variant: dict[str, Any], params: dict[str, Any]) -> str:
        """Create a generation task and return its task id.

        Args:
            variant: Style descriptor (``prompt``, ``aspect_ratio``, ``negative_prompt``)
            params: Job-level inputs (``source_image_url``, ``product_analysis``)

        Raises:
            ProviderError: On transport errors, non-2xx responses or a
                response body without ``code == 200`` and a task id
        """
        prompt = customize_prompt(variant.get("prompt") or "", params.get("product_analysis"))
        task_input: dict[str, Any] = {
            "prompt": prompt,
            "image_urls": [params["source_image_url"]],
            "image_size": variant.get("aspect_ratio") or "1:1",
            "output_format": "png",
        }
        if variant.get("negative_prompt"):
            task_input["negative_prompt"] = variant["negative_prompt"]

        body = await self._request(
            "POST",
            CREATE_TASK_ENDPOINT,
            json={"model": self.model, "input": task_input},
        )
        task_id = (body.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderError("Invalid response from KIE.AI: missing taskId")

        logger.info(f"Submitted KIE.AI task {task_id} ({variant.get('style_name') or variant.get('style_id')})")
        return str(task_id)

    async def status(self, task_id: str) -> TaskStatus:
        """Report the current state of a task.

        Raises:
            ProviderError: On transport errors, malformed bodies, unknown
                states, or a success without a result URL
        """
        body = await self._request("GET", RECORD_INFO_ENDPOINT, params={"taskId": task_id})
        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError(f"Invalid status response for task {task_id}: missing data")

        state = data.get("state")
        status = _STATE_MAP.get(state)
        if status is None:
            raise ProviderError(f"Unknown task state for {task_id}: {state!r}")

        if status == TASK_COMPLETED:
            result_url = self._result_url(data.get("resultJson"))
            if not result_url:
                raise ProviderError(f"Task {task_id} succeeded without a result URL")
            return TaskStatus(status=status, result_ref=result_url)

        if status == TASK_FAILED:
            error = data.get("failMsg") or data.get("failCode") or "Generation failed"
            return TaskStatus(status=status, error=str(error))

        return TaskStatus(status=status)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"KIE.AI {method} {path} failed: {e}")
            raise ProviderError(f"KIE.AI request failed: {e}") from e

        if not response.is_success:
            raise ProviderError(f"KIE.AI API error: {response.status_code} - {response.text[:500]}")

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("KIE.AI returned a non-JSON body") from e

        if not isinstance(body, dict):
            raise ProviderError("KIE.AI returned an unexpected body")
        if body.get("code") != 200:
            message = body.get("msg") or body.get("message") or body.get("error") or "Unknown error"
            raise ProviderError(f"KIE.AI error ({body.get('code')}): {message}")
        return body

    @staticmethod
    def _result_url(result_json: Any) -> str | None:
        if isinstance(result_json, str):
            try:
                result_json = json.loads(result_json)
            except ValueError:
                return None
        if not isinstance(result_json, dict):
            return None
        urls = result_json.get("resultUrls") or []
        return urls[0] if urls else None
