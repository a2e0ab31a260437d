# Services package

from ad_batch.services.batch_scheduler import BatchScheduler, JobOutcome
from ad_batch.services.change_broker import ChangeBroker, ChangeEvent, Subscription
from ad_batch.services.credential_service import CredentialService
from ad_batch.services.factory import Pipeline, build_pipeline
from ad_batch.services.generation_client import KieGenerationClient, TaskStatus
from ad_batch.services.item_processor import ItemProcessor, Outcome, OutcomeKind
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.state_store import StateStore
from ad_batch.services.sync_cache import CacheEntry, ClientSyncCache

__all__ = [
    "BatchScheduler",
    "CacheEntry",
    "ChangeBroker",
    "ChangeEvent",
    "ClientSyncCache",
    "CredentialService",
    "ItemProcessor",
    "JobOrchestrator",
    "JobOutcome",
    "KieGenerationClient",
    "Outcome",
    "OutcomeKind",
    "Pipeline",
    "StateStore",
    "Subscription",
    "TaskStatus",
    "build_pipeline",
]
