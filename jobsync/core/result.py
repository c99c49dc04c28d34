"""Ok/Err result values for fetch and mutate outcomes."""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from jobsync.core.errors import SyncError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the resolved value."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying a taxonomy error."""

    error: SyncError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        """Raise the carried error."""
        raise self.error


Result = Union[Ok[T], Err]

__all__ = ["Ok", "Err", "Result"]
