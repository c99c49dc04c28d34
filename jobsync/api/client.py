"""HTTP client for the workbook processing backend.

Wraps ``httpx.AsyncClient`` and maps every failure to the sync error
taxonomy:
- transport failures and timeouts -> NetworkError
- error responses -> AuthError/ForbiddenError/NotFoundError/
  ValidationError/ServerError (see ``error_for_status``)
- undecodable or schema-violating payloads -> ServerError
- log stream failures -> StreamError
"""

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import httpx
import orjson
import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from jobsync.core.config import Settings
from jobsync.core.errors import (
    NetworkError,
    ServerError,
    StreamError,
    error_for_status,
)
from jobsync.models.job import JobRecord, LogEvent
from jobsync.models.workbook import Sheet, Workbook, WorkbookPage

logger = structlog.get_logger()

T = TypeVar("T")

_JOB = TypeAdapter(JobRecord)
_JOBS = TypeAdapter(list[JobRecord])
_LOGS = TypeAdapter(list[LogEvent])
_WORKBOOK = TypeAdapter(Workbook)
_WORKBOOK_PAGE = TypeAdapter(WorkbookPage)
_SHEET = TypeAdapter(Sheet)
_SHEETS = TypeAdapter(list[Sheet])


class BackendClient:
    """Async client for the backend's workbook and processing endpoints.

    Usage:
        async with BackendClient.from_settings(settings) as client:
            job = await client.get_job(42)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Backend API root, e.g. ``http://localhost:8000/api``.
            timeout: Request timeout in seconds.
            token: Optional bearer token sent on every request.
            transport: Custom httpx transport (tests use ASGITransport).
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "BackendClient":
        return cls(
            base_url=settings.api_base_url,
            timeout=settings.api_timeout,
            token=settings.api_token,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # Workbooks

    async def list_workbooks(
        self, params: Mapping[str, Any] | None = None
    ) -> WorkbookPage:
        payload = await self._request("GET", "/workbooks/", params=params)
        return self._parse(_WORKBOOK_PAGE, payload, "workbook list")

    async def get_workbook(self, workbook_id: int) -> Workbook:
        payload = await self._request("GET", f"/workbooks/{workbook_id}/")
        return self._parse(_WORKBOOK, payload, "workbook")

    async def update_workbook(
        self, workbook_id: int, changes: Mapping[str, Any]
    ) -> Workbook:
        payload = await self._request(
            "PATCH", f"/workbooks/{workbook_id}/", json=dict(changes)
        )
        return self._parse(_WORKBOOK, payload, "workbook")

    async def get_sheets(self, workbook_id: int) -> list[Sheet]:
        payload = await self._request("GET", f"/workbooks/{workbook_id}/sheets/")
        return self._parse(_SHEETS, payload, "sheet list")

    async def update_sheet(self, sheet_id: int, changes: Mapping[str, Any]) -> Sheet:
        payload = await self._request("PATCH", f"/sheets/{sheet_id}/", json=dict(changes))
        return self._parse(_SHEET, payload, "sheet")

    async def get_tax_computation(self, workbook_id: int) -> dict[str, Any]:
        payload = await self._request(
            "GET", f"/workbooks/{workbook_id}/tax-computation/"
        )
        if not isinstance(payload, dict):
            raise ServerError("Malformed tax computation response")
        return payload

    # Processing

    async def get_job(self, workbook_id: int) -> JobRecord:
        """Current processing status for a workbook."""
        payload = await self._request("GET", f"/workbooks/{workbook_id}/status/")
        return self._parse(_JOB, payload, "processing status")

    async def start_processing(
        self,
        workbook_id: int,
        mode: str | None = None,
        force_reprocess: bool = False,
    ) -> JobRecord:
        body: dict[str, Any] = {}
        if mode:
            body["mode"] = mode
        if force_reprocess:
            body["force_reprocess"] = True
        payload = await self._request(
            "POST", f"/workbooks/{workbook_id}/process/", json=body
        )
        return self._parse(_JOB, payload, "processing status")

    async def cancel_processing(self, workbook_id: int) -> JobRecord:
        """Stop processing and return the resulting status.

        The stop endpoint may answer without a body, in which case the
        status is read back.
        """
        payload = await self._request(
            "POST", f"/workbooks/{workbook_id}/stop-processing/"
        )
        if isinstance(payload, dict) and "status" in payload:
            return self._parse(_JOB, payload, "processing status")
        return await self.get_job(workbook_id)

    async def retry_processing(self, workbook_id: int) -> JobRecord:
        payload = await self._request(
            "POST", f"/workbooks/{workbook_id}/retry-processing/"
        )
        return self._parse(_JOB, payload, "processing status")

    async def get_queue(self) -> list[JobRecord]:
        """Snapshot of every job currently in the processing queue."""
        payload = await self._request("GET", "/processing/queue/")
        return self._parse(_JOBS, payload, "processing queue")

    async def get_queue_position(self, workbook_id: int) -> int | None:
        payload = await self._request(
            "GET", f"/workbooks/{workbook_id}/queue-position/"
        )
        if isinstance(payload, dict):
            payload = payload.get("position")
        if payload is None:
            return None
        if isinstance(payload, bool) or not isinstance(payload, int):
            raise ServerError("Malformed queue position response")
        return payload

    # Logs

    async def latest_logs(self, workbook_id: int, limit: int = 50) -> list[LogEvent]:
        payload = await self._request(
            "GET",
            f"/workbooks/{workbook_id}/logs/latest/",
            params={"limit": limit},
        )
        return self._parse(_LOGS, payload, "processing logs")

    @asynccontextmanager
    async def stream_logs(
        self, workbook_id: int, last_event_id: str | None = None
    ) -> AsyncIterator[AsyncIterator[LogEvent]]:
        """Open the Server-Sent Events log stream for a workbook.

        Args:
            workbook_id: Workbook whose processing logs are streamed.
            last_event_id: Sent as ``Last-Event-ID`` so the backend resumes
                after the last delivered event.

        Yields:
            Async iterator of LogEvent in stream order.

        Raises:
            StreamError: On connection failure, error response, or a
                malformed event.
        """
        path = f"/workbooks/{workbook_id}/logs/stream/"
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        timeout = httpx.Timeout(self._timeout, read=None)

        try:
            async with self._client.stream(
                "GET", path, headers=headers, timeout=timeout
            ) as response:
                if response.is_error:
                    await response.aread()
                    error = error_for_status(
                        response.status_code, self._decode_error_body(response)
                    )
                    raise StreamError(error.message, response.status_code) from error
                logger.debug(
                    "log_stream_connected",
                    job_id=workbook_id,
                    last_event_id=last_event_id,
                )
                yield self._iter_events(response)
        except httpx.HTTPError as exc:
            raise StreamError(f"Log stream connection failed: {exc}") from exc

    # Internals

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            NetworkError: If no response was received.
            SyncError: Taxonomy error for an error response.
            ServerError: If a successful response carries invalid JSON.
        """
        try:
            response = await self._client.request(
                method, path, params=params, json=json
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Request failed: {method} {path}: {exc}") from exc

        logger.debug(
            "backend_response",
            method=method,
            path=path,
            status_code=response.status_code,
        )

        if response.is_error:
            raise error_for_status(
                response.status_code, self._decode_error_body(response)
            )
        if not response.content:
            return None
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise ServerError(
                f"Invalid JSON in response to {method} {path}", response.status_code
            ) from exc

    @staticmethod
    def _decode_error_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError:
            return {"detail": response.text.strip()} if response.text.strip() else None

    @staticmethod
    def _parse(adapter: TypeAdapter[T], payload: Any, what: str) -> T:
        try:
            return adapter.validate_python(payload)
        except PydanticValidationError as exc:
            raise ServerError(f"Malformed {what} response: {exc}") from exc

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[LogEvent]:
        event_id: str | None = None
        data_lines: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if data_lines:
                    yield _parse_log_event(data_lines, event_id)
                event_id = None
                data_lines = []
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "id":
                event_id = value
            elif field == "data":
                data_lines.append(value)
        if data_lines:
            yield _parse_log_event(data_lines, event_id)


def _parse_log_event(data_lines: list[str], event_id: str | None) -> LogEvent:
    """Decode one SSE message into a LogEvent.

    Raises:
        StreamError: If the message is an error frame or is malformed.
    """
    try:
        payload = orjson.loads("\n".join(data_lines))
    except orjson.JSONDecodeError as exc:
        raise StreamError("Malformed log stream event") from exc
    if not isinstance(payload, dict):
        raise StreamError("Malformed log stream event")
    if "error" in payload and "message" not in payload:
        raise StreamError(str(payload["error"]))
    if "id" not in payload and event_id is not None:
        payload["id"] = event_id
    try:
        return LogEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise StreamError(f"Malformed log stream event: {exc}") from exc


__all__ = ["BackendClient"]
