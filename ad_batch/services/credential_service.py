"""Provider API key resolution for generation jobs."""

import base64
import binascii
import logging
from datetime import datetime

from ad_batch.config import Settings, get_settings
from ad_batch.core.exceptions import QuotaExceededError
from ad_batch.db.models import SOURCE_ADMIN, SOURCE_USER, ProviderCredential
from ad_batch.db.repositories import CredentialRepository
from ad_batch.services.state_store import StateStore

logger = logging.getLogger(__name__)


def encode_api_key(api_key: str) -> str:
    """Encode a raw key the way it is stored in ``api_key_encrypted``."""
    return base64.b64encode(api_key.encode("utf-8")).decode("ascii")


def decode_api_key(stored: str) -> str:
    return base64.b64decode(stored.encode("ascii"), validate=True).decode("utf-8")


class CredentialService:
    """Resolves which provider key a job runs with.

    Resolution order:
    1. Active key assigned to the owner by an administrator
    2. Owner's active personal key
    3. Platform key from settings (``kie_api_key``)
    """

    def __init__(self, store: StateStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def resolve_api_key(self, owner_id: str) -> str:
        """Return the key to use for ``owner_id``.

        Raises:
            QuotaExceededError: No admin, user or platform key is available.
        """
        service = self.settings.kie_service_name

        for source in (SOURCE_ADMIN, SOURCE_USER):
            api_key = self._owner_key(owner_id, service, source)
            if api_key:
                logger.debug(f"Using {source} {service} key for owner {owner_id}")
                return api_key

        if self.settings.kie_api_key:
            logger.debug(f"Using platform {service} key for owner {owner_id}")
            return self.settings.kie_api_key

        raise QuotaExceededError(
            f"No {service} API key available. Add your own key or contact an administrator.",
            context={"owner_id": owner_id, "service": service},
        )

    def has_usable_key(self, owner_id: str) -> bool:
        try:
            self.resolve_api_key(owner_id)
        except QuotaExceededError:
            return False
        return True

    def _owner_key(self, owner_id: str, service: str, source: str) -> str | None:
        with self.store.session() as db:
            repo = CredentialRepository(db)
            credential: ProviderCredential | None = repo.find_active(owner_id, service, source)
            if credential is None:
                return None

            try:
                api_key = decode_api_key(credential.api_key_encrypted)
            except (binascii.Error, UnicodeDecodeError, ValueError) as e:
                logger.warning(f"Could not decode {source} key {credential.id}: {e}")
                return None

            credential.last_used_at = datetime.utcnow()
            db.commit()
            return api_key
