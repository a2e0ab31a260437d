"""Generation provider credentials."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, String, Text

from ad_batch.db.database import Base
from ad_batch.db.models.base import generate_uuid

SOURCE_ADMIN = "admin"  # Assigned to the owner by a platform administrator
SOURCE_USER = "user"  # Owner's personal key


class ProviderCredential(Base):
    """An API key for a generation provider, scoped to one owner.

    Keys are stored base64-encoded in ``api_key_encrypted``.
    """

    __tablename__ = "provider_credentials"
    __table_args__ = (Index("idx_provider_credentials_lookup", "owner_id", "service", "source"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False)
    service = Column(String, nullable=False, default="kie-ai")
    source = Column(String, nullable=False, default=SOURCE_USER)
    api_key_encrypted = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
