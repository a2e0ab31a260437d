"""ARQ task registration.

All ARQ task functions are imported here for WorkerSettings.functions.
"""

from ad_batch.workers.tasks.advertising import process_advertising_job

__all__ = ["process_advertising_job"]
