"""
Action executor contract.

The executor is the boundary to the ledger API that actually creates a
budget, updates a goal, and so on. The cascade never calls it directly:
only the confirmation service and the offline queue do.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from fincascade.models.actions import EntityType, QueuedActionType


class ExecutorError(Exception):
    """Base exception for action execution failures."""
    pass


class ExecutorUnavailableError(ExecutorError):
    """The backend could not be reached; the action may be retried later."""
    pass


class ActionExecutorInterface(ABC):
    """Runs one mutating action against the backend."""

    @abstractmethod
    async def execute(
        self,
        action_type: QueuedActionType,
        entity: EntityType,
        data: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Execute an action.

        idempotency_key is the confirmation's key. It is the same on every
        attempt, so a backend that already applied the action can answer
        the replay without applying it twice.

        Returns:
            The backend's response body

        Raises:
            ExecutorUnavailableError: Backend unreachable
            ExecutorError: The backend rejected the action
        """
        pass


class ConnectivityProbe(ABC):
    """Answers whether the backend is reachable right now."""

    @abstractmethod
    async def is_online(self) -> bool:
        pass


class StaticConnectivityProbe(ConnectivityProbe):
    """A probe with a settable answer (single-process runs, tests)."""

    def __init__(self, online: bool = True):
        self.online = online

    async def is_online(self) -> bool:
        return self.online
