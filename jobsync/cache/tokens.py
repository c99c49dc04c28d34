"""Explicit cancellation tokens for fetches and stream connections."""


class CancellationToken:
    """Abort handle passed into an asynchronous task.

    The task checks ``cancelled`` when it resumes; a cancelled task still
    settles, but its result is discarded.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason or None

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
