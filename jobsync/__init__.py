"""Asynchronous job state synchronization for workbook processing."""

from jobsync.sync import JobSyncClient, open_sync

__version__ = "0.1.0"

__all__ = ["JobSyncClient", "open_sync", "__version__"]
