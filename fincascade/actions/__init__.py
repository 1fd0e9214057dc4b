"""Confirmed, exactly-once side effects and the offline retry queue."""

from fincascade.actions.confirmation import (
    ACTION_ROUTES,
    ActionConfirmationService,
    ActionExecutionError,
    ActionRoute,
    ConfirmationConsumedError,
    ConfirmationError,
    ConfirmationExpiredError,
    ConfirmationNotFoundError,
    IdempotencyKeyMismatchError,
    UnknownActionError,
    is_mutating_action,
)
from fincascade.actions.executor import (
    ActionExecutorInterface,
    ConnectivityProbe,
    ExecutorError,
    ExecutorUnavailableError,
    StaticConnectivityProbe,
)
from fincascade.actions.queue import ActionQueue, BackoffPolicy

__all__ = [
    # Confirmation
    "ACTION_ROUTES",
    "ActionConfirmationService",
    "ActionExecutionError",
    "ActionRoute",
    "ConfirmationConsumedError",
    "ConfirmationError",
    "ConfirmationExpiredError",
    "ConfirmationNotFoundError",
    "IdempotencyKeyMismatchError",
    "UnknownActionError",
    "is_mutating_action",
    # Executor
    "ActionExecutorInterface",
    "ConnectivityProbe",
    "ExecutorError",
    "ExecutorUnavailableError",
    "StaticConnectivityProbe",
    # Queue
    "ActionQueue",
    "BackoffPolicy",
]
