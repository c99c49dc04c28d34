"""Backend transport: HTTP client and fetch handler registration."""

from jobsync.api.client import BackendClient
from jobsync.api.resources import register_backend_resources

__all__ = ["BackendClient", "register_backend_resources"]
