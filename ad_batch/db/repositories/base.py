"""Generic base repository for SQLAlchemy models."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session


class BaseRepository[T]:
    """Generic base repository providing standard read/persist operations.

    Repositories never commit; the StateStore owns transaction boundaries
    and publishes change events after each commit.
    """

    model: type[T]

    def __init__(self, db: Session) -> None:
        self.db = db

    # --- Retrieval ---

    def get(self, id_: Any) -> T | None:
        """Get entity by primary key."""
        return self.db.get(self.model, id_)

    def get_with_filter(self, id_: Any, **filters: Any) -> T | None:
        """Get by PK with additional filters (e.g., owner check)."""
        stmt = select(self.model).where(self.model.id == id_)
        for key, value in filters.items():
            stmt = stmt.where(getattr(self.model, key) == value)
        return self.db.scalar(stmt)

    # --- Persistence (never commit) ---

    def add(self, obj: T) -> T:
        """Add entity to session."""
        self.db.add(obj)
        return obj

    def add_all(self, objs: list[T]) -> list[T]:
        """Add multiple entities to session."""
        self.db.add_all(objs)
        return objs

    def delete(self, obj: T) -> None:
        """Mark entity for deletion."""
        self.db.delete(obj)

    def flush(self) -> None:
        """Flush pending changes (get IDs and FK targets without commit)."""
        self.db.flush()
