"""Service factories wiring the pipeline together.

Everything shares one StateStore (and so one ChangeBroker); the API, the
ARQ task and the cleanup service all receive the same Pipeline instance.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from ad_batch.config import Settings, get_settings
from ad_batch.schemas.jobs import GeneratedImageRead, ImageCollectionRead, JobRead
from ad_batch.services.change_broker import ChangeBroker
from ad_batch.services.credential_service import CredentialService
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.state_store import StateStore
from ad_batch.services.sync_cache import ClientSyncCache

if TYPE_CHECKING:
    from ad_batch.services.batch_scheduler import BatchScheduler, ClientFactory
    from ad_batch.services.protocols import GenerationClientProtocol

logger = logging.getLogger(__name__)


def get_generation_client(settings: Settings, api_key: str) -> "GenerationClientProtocol":
    """Factory that returns the generation provider client for an API key."""
    from ad_batch.services.generation_client import KieGenerationClient

    return KieGenerationClient(
        api_key=api_key,
        base_url=settings.kie_api_base,
        model=settings.kie_model,
        timeout=settings.provider_timeout_seconds,
    )


@dataclass
class Pipeline:
    """Shared pipeline services for one process."""

    settings: Settings
    store: StateStore
    credentials: CredentialService
    orchestrator: JobOrchestrator
    client_factory: "ClientFactory"
    job_cache: ClientSyncCache
    gallery_cache: ClientSyncCache
    collection_cache: ClientSyncCache
    processor_options: dict[str, Any] = field(default_factory=dict)

    @property
    def broker(self) -> ChangeBroker:
        return self.store.broker

    def scheduler(self) -> "BatchScheduler":
        """A fresh scheduler; each job run gets its own run id."""
        from ad_batch.services.batch_scheduler import BatchScheduler

        return BatchScheduler(
            self.store,
            self.orchestrator,
            self.credentials,
            self.client_factory,
            settings=self.settings,
            **self.processor_options,
        )

    async def close(self) -> None:
        for cache in (self.job_cache, self.gallery_cache, self.collection_cache):
            await cache.close()


def build_caches(store: StateStore, settings: Settings) -> tuple[ClientSyncCache, ClientSyncCache, ClientSyncCache]:
    """Job cache plus the gallery and collection caches it invalidates."""

    async def fetch_jobs(owner_id: str) -> list[JobRead]:
        jobs = store.list_jobs(owner_id, limit=settings.job_list_limit)
        return [JobRead.model_validate(job) for job in jobs]

    async def fetch_images(owner_id: str) -> list[GeneratedImageRead]:
        return [GeneratedImageRead.model_validate(image) for image in store.list_images(owner_id)]

    async def fetch_collections(owner_id: str) -> list[ImageCollectionRead]:
        return [ImageCollectionRead.model_validate(c) for c in store.list_collections(owner_id)]

    gallery_cache = ClientSyncCache(
        fetch_images,
        ttl_seconds=settings.cache_ttl_seconds,
        refresh_interval_seconds=settings.cache_refresh_interval_seconds,
        name="gallery",
    )
    collection_cache = ClientSyncCache(
        fetch_collections,
        ttl_seconds=settings.cache_ttl_seconds,
        refresh_interval_seconds=settings.cache_refresh_interval_seconds,
        name="collections",
    )
    job_cache = ClientSyncCache(
        fetch_jobs,
        ttl_seconds=settings.cache_ttl_seconds,
        refresh_interval_seconds=settings.cache_refresh_interval_seconds,
        broker=store.broker,
        dependents=(gallery_cache, collection_cache),
        name="jobs",
    )
    return job_cache, gallery_cache, collection_cache


def build_pipeline(
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    broker: ChangeBroker | None = None,
    client_factory: "ClientFactory | None" = None,
    **processor_options: Any,
) -> Pipeline:
    """Assemble the pipeline.

    Args:
        settings: Application settings (get_settings() if None)
        session_factory: Session factory (SessionLocal if None)
        broker: Change broker (a new one sized by settings if None)
        client_factory: API key -> generation client (KIE.AI if None)
        **processor_options: Forwarded to ItemProcessor (sleep, clock)
    """
    settings = settings or get_settings()
    broker = broker or ChangeBroker(queue_size=settings.change_queue_size)
    store = StateStore(session_factory, broker)
    credentials = CredentialService(store, settings)
    orchestrator = JobOrchestrator(store, credentials, settings)

    if client_factory is None:

        def client_factory(api_key: str) -> "GenerationClientProtocol":
            return get_generation_client(settings, api_key)

    job_cache, gallery_cache, collection_cache = build_caches(store, settings)
    logger.info("Pipeline assembled")
    return Pipeline(
        settings=settings,
        store=store,
        credentials=credentials,
        orchestrator=orchestrator,
        client_factory=client_factory,
        job_cache=job_cache,
        gallery_cache=gallery_cache,
        collection_cache=collection_cache,
        processor_options=processor_options,
    )
