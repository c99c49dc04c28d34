"""Polling, log streaming and optimistic mutation coordination."""

from jobsync.orchestration.mutations import (
    CommitState,
    MutationCoordinator,
    MutationIntent,
)
from jobsync.orchestration.polling import (
    PollingOptions,
    PollingScheduler,
    PollState,
    PollStateMachine,
    always_poll,
)
from jobsync.orchestration.streaming import (
    ConnectionState,
    StreamConnector,
    StreamSession,
    StreamStateMachine,
)

__all__ = [
    "CommitState",
    "ConnectionState",
    "MutationCoordinator",
    "MutationIntent",
    "PollState",
    "PollStateMachine",
    "PollingOptions",
    "PollingScheduler",
    "StreamConnector",
    "StreamSession",
    "StreamStateMachine",
    "always_poll",
]
