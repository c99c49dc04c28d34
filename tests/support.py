"""Test doubles and helpers shared across test modules."""

import asyncio
from collections import deque
from collections.abc import Callable
from typing import Any

import orjson
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from jobsync.cache.tokens import CancellationToken
from jobsync.models.job import JobRecord, JobStatus, LogEvent
from jobsync.models.keys import CacheKey, key_kind


class FakeSource:
    """Fetch source with scripted or manually resolved responses.

    Scripted responses (``script``/``always``) resolve immediately; any
    other fetch blocks until the test calls ``resolve``/``fail``. Items
    that are exceptions are raised instead of returned.
    """

    def __init__(self, kinds: tuple[str, ...] = ("job", "queue", "workbook", "workbooks")) -> None:
        self.kinds = set(kinds)
        self.calls: list[CacheKey] = []
        self.tokens: list[CancellationToken] = []
        self._scripted: dict[CacheKey, deque[Any]] = {}
        self._defaults: dict[CacheKey, Any] = {}
        self._waiting: dict[CacheKey, list[asyncio.Future[Any]]] = {}

    def can_fetch(self, key: CacheKey) -> bool:
        return key_kind(key) in self.kinds

    def script(self, key: CacheKey, *responses: Any) -> None:
        self._scripted.setdefault(key, deque()).extend(responses)

    def always(self, key: CacheKey, response: Any) -> None:
        self._defaults[key] = response

    def count(self, key: CacheKey) -> int:
        return sum(1 for called in self.calls if called == key)

    def waiting(self, key: CacheKey) -> int:
        return len(self._waiting.get(key, ()))

    def resolve(self, key: CacheKey, value: Any, index: int = 0) -> None:
        self._waiting[key].pop(index).set_result(value)

    def fail(self, key: CacheKey, error: BaseException, index: int = 0) -> None:
        self._waiting[key].pop(index).set_exception(error)

    async def fetch(self, key: CacheKey, token: CancellationToken) -> Any:
        self.calls.append(key)
        self.tokens.append(token)
        scripted = self._scripted.get(key)
        if scripted:
            item = scripted.popleft()
        elif key in self._defaults:
            item = self._defaults[key]
        else:
            future = asyncio.get_running_loop().create_future()
            self._waiting.setdefault(key, []).append(future)
            item = await future
        if isinstance(item, BaseException):
            raise item
        return item


class SleepRecorder:
    """Zero-delay replacement for asyncio.sleep that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], max_iterations: int = 500) -> None:
    """Yield to the event loop until predicate holds.

    Raises:
        AssertionError: If the predicate is still false afterwards.
    """
    for _ in range(max_iterations):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def flush_loop(iterations: int = 20) -> None:
    """Let pending tasks run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


def make_job(status: str = "running", workbook_id: int = 42, **fields: Any) -> JobRecord:
    """Build a JobRecord satisfying the status invariants."""
    parsed = JobStatus.parse(status)
    defaults: dict[str, Any] = {"progress": 40 if parsed == JobStatus.RUNNING else 0}
    if parsed == JobStatus.SUCCEEDED:
        defaults["progress"] = 100
    if parsed == JobStatus.FAILED:
        defaults["error_message"] = "Classification failed"
    defaults.update(fields)
    return JobRecord(id=workbook_id, workbook_id=workbook_id, status=parsed, **defaults)


def make_event(event_id: int, message: str = "") -> LogEvent:
    return LogEvent(id=event_id, level="info", step="classify", message=message or f"event {event_id}")



def create_fake_backend(state: dict[str, Any] | None = None) -> FastAPI:
    """In-process backend serving the endpoints the client talks to.

    ``state`` is shared with the test so it can change job status or
    inspect received requests between calls.
    """
    state = state if state is not None else {}
    state.setdefault("jobs", {})
    state.setdefault("workbooks", {})
    state.setdefault("sheets", {})
    state.setdefault("logs", {})
    state.setdefault("requests", [])
    app = FastAPI()

    @app.middleware("http")
    async def record_requests(request: Request, call_next: Any) -> Response:
        state["requests"].append(
            {
                "method": request.method,
                "path": request.url.path,
                "query": dict(request.query_params),
                "headers": dict(request.headers),
            }
        )
        return await call_next(request)

    def not_found() -> JSONResponse:
        return JSONResponse({"detail": "Not found."}, status_code=404)

    @app.get("/api/workbooks/")
    async def list_workbooks() -> Any:
        results = list(state["workbooks"].values())
        return {"count": len(results), "next": None, "previous": None, "results": results}

    @app.get("/api/workbooks/{workbook_id}/")
    async def get_workbook(workbook_id: int) -> Any:
        workbook = state["workbooks"].get(workbook_id)
        return workbook if workbook is not None else not_found()

    @app.patch("/api/workbooks/{workbook_id}/")
    async def update_workbook(workbook_id: int, request: Request) -> Any:
        workbook = state["workbooks"].get(workbook_id)
        if workbook is None:
            return not_found()
        changes = await request.json()
        if not changes.get("client_name", "x"):
            return JSONResponse(
                {"errors": {"client_name": ["This field may not be blank."]}},
                status_code=422,
            )
        workbook.update(changes)
        return workbook

    @app.get("/api/workbooks/{workbook_id}/sheets/")
    async def get_sheets(workbook_id: int) -> Any:
        return state["sheets"].get(workbook_id, [])

    @app.patch("/api/sheets/{sheet_id}/")
    async def update_sheet(sheet_id: int, request: Request) -> Any:
        changes = await request.json()
        for sheets in state["sheets"].values():
            for sheet in sheets:
                if sheet["id"] == sheet_id:
                    sheet.update(changes)
                    return sheet
        return not_found()

    @app.get("/api/workbooks/{workbook_id}/status/")
    async def get_status(workbook_id: int) -> Any:
        job = state["jobs"].get(workbook_id)
        return job if job is not None else not_found()

    @app.post("/api/workbooks/{workbook_id}/process/")
    async def start_processing(workbook_id: int) -> Any:
        job = {"workbook_id": workbook_id, "status": "pending", "progress": 0}
        state["jobs"][workbook_id] = job
        return job

    @app.post("/api/workbooks/{workbook_id}/stop-processing/")
    async def stop_processing(workbook_id: int) -> Any:
        job = state["jobs"].get(workbook_id)
        if job is None:
            return not_found()
        if job["status"] in ("completed", "failed"):
            return JSONResponse(
                {"detail": "Processing already finished."}, status_code=422
            )
        job.update(status="cancelled", error_message=None)
        return Response(status_code=204)

    @app.post("/api/workbooks/{workbook_id}/retry-processing/")
    async def retry_processing(workbook_id: int) -> Any:
        job = {"workbook_id": workbook_id, "status": "pending", "progress": 0}
        state["jobs"][workbook_id] = job
        return job

    @app.get("/api/workbooks/{workbook_id}/logs/latest/")
    async def latest_logs(workbook_id: int, limit: int = 50) -> Any:
        return state["logs"].get(workbook_id, [])[-limit:]

    @app.get("/api/workbooks/{workbook_id}/logs/stream/")
    async def stream_logs(workbook_id: int, request: Request) -> Any:
        if workbook_id not in state["jobs"]:
            return not_found()
        last_event_id = request.headers.get("last-event-id")
        events = state["logs"].get(workbook_id, [])
        if last_event_id is not None:
            events = [event for event in events if event["id"] > int(last_event_id)]

        async def event_generator():
            yield ": keep-alive\n\n"
            for event in events:
                body = {key: value for key, value in event.items() if key != "id"}
                yield f"id: {event['id']}\ndata: {orjson.dumps(body).decode('utf-8')}\n\n"

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    @app.get("/api/processing/queue/")
    async def queue() -> Any:
        return [
            job
            for job in state["jobs"].values()
            if job["status"] in ("pending", "queued", "processing")
        ]

    @app.get("/api/workbooks/{workbook_id}/queue-position/")
    async def queue_position(workbook_id: int) -> Any:
        return {"position": state.get("positions", {}).get(workbook_id)}

    @app.get("/api/workbooks/{workbook_id}/tax-computation/")
    async def tax_computation(workbook_id: int) -> Any:
        return {"workbook": workbook_id, "chargeable_income": "125000.00"}

    return app
