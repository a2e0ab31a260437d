from sqlalchemy import select

from ad_batch.db.models import ProviderCredential
from ad_batch.db.repositories.base import BaseRepository


class CredentialRepository(BaseRepository[ProviderCredential]):
    model = ProviderCredential

    def find_active(self, owner_id: str, service: str, source: str) -> ProviderCredential | None:
        stmt = (
            select(ProviderCredential)
            .where(
                ProviderCredential.owner_id == owner_id,
                ProviderCredential.service == service,
                ProviderCredential.source == source,
                ProviderCredential.is_active.is_(True),
            )
            .order_by(ProviderCredential.created_at.desc())
            .limit(1)
        )
        return self.db.scalar(stmt)
