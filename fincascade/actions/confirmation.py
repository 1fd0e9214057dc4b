"""
Action Confirmation Service

DESIGN DECISION: No mutating action runs on a model's say-so.
AI suggests -> user confirms -> system executes, exactly once.

Each confirmation carries:
1. A random single-use token (what the UI sends back)
2. An idempotency key the confirm call must repeat
3. An expiry (default 5 minutes)

A token is consumed the moment confirm() starts executing, before the
executor is awaited, so a second confirm (double tap, retry) is refused
even while the first is still running.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

import structlog

from fincascade.actions.executor import (
    ActionExecutorInterface,
    ExecutorError,
    ExecutorUnavailableError,
)
from fincascade.actions.queue import ActionQueue
from fincascade.analytics.emitter import AnalyticsEmitter
from fincascade.models.actions import (
    ActionConfirmation,
    ActionExecutionResult,
    ActionPriority,
    ActionScope,
    ConfirmationStatus,
    EntityType,
    QueuedActionType,
)
from fincascade.models.analytics import AnalyticsEventType


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ActionRoute:
    """How an action type maps onto the executor and the queue."""

    action_type: QueuedActionType
    entity: EntityType
    scope: ActionScope


ACTION_ROUTES: dict[str, ActionRoute] = {
    # Budgets
    "create_budget": ActionRoute(QueuedActionType.CREATE, EntityType.BUDGET, ActionScope.FINANCIAL_DATA),
    "update_budget": ActionRoute(QueuedActionType.UPDATE, EntityType.BUDGET, ActionScope.FINANCIAL_DATA),
    "adjust_budget": ActionRoute(QueuedActionType.UPDATE, EntityType.BUDGET, ActionScope.FINANCIAL_DATA),
    "delete_budget": ActionRoute(QueuedActionType.DELETE, EntityType.BUDGET, ActionScope.FINANCIAL_DATA),
    # Goals
    "create_goal": ActionRoute(QueuedActionType.CREATE, EntityType.GOAL, ActionScope.FINANCIAL_DATA),
    "update_goal": ActionRoute(QueuedActionType.UPDATE, EntityType.GOAL, ActionScope.FINANCIAL_DATA),
    "delete_goal": ActionRoute(QueuedActionType.DELETE, EntityType.GOAL, ActionScope.FINANCIAL_DATA),
    # Transactions
    "create_transaction": ActionRoute(QueuedActionType.CREATE, EntityType.TRANSACTION, ActionScope.FINANCIAL_DATA),
    "update_transaction": ActionRoute(QueuedActionType.UPDATE, EntityType.TRANSACTION, ActionScope.FINANCIAL_DATA),
    "delete_transaction": ActionRoute(QueuedActionType.DELETE, EntityType.TRANSACTION, ActionScope.FINANCIAL_DATA),
    # Recurring expenses
    "create_recurring_expense": ActionRoute(QueuedActionType.CREATE, EntityType.RECURRING_EXPENSE, ActionScope.FINANCIAL_DATA),
    "update_recurring_expense": ActionRoute(QueuedActionType.UPDATE, EntityType.RECURRING_EXPENSE, ActionScope.FINANCIAL_DATA),
    "delete_recurring_expense": ActionRoute(QueuedActionType.DELETE, EntityType.RECURRING_EXPENSE, ActionScope.FINANCIAL_DATA),
    # Everything else that changes state
    "set_reminder": ActionRoute(QueuedActionType.CREATE, EntityType.REMINDER, ActionScope.SYSTEM_SETTINGS),
    "update_preferences": ActionRoute(QueuedActionType.UPDATE, EntityType.PREFERENCES, ActionScope.USER_DATA),
    "export_data": ActionRoute(QueuedActionType.CREATE, EntityType.DATA_EXPORT, ActionScope.DATA_EXPORT),
}


def is_mutating_action(action_type: str) -> bool:
    """True when an action changes state and therefore needs confirmation."""
    return action_type in ACTION_ROUTES


class ConfirmationError(Exception):
    """Base exception for confirmation failures."""
    pass


class UnknownActionError(ConfirmationError):
    """The action type is not a known mutating action."""
    pass


class ConfirmationNotFoundError(ConfirmationError):
    """No confirmation exists for the token."""
    pass


class ConfirmationExpiredError(ConfirmationError):
    """The confirmation passed its expiry before being confirmed."""
    pass


class ConfirmationConsumedError(ConfirmationError):
    """The token was already used (confirmed or cancelled)."""
    pass


class IdempotencyKeyMismatchError(ConfirmationError):
    """The idempotency key does not belong to the token."""
    pass


class ActionExecutionError(Exception):
    """The confirmed action failed; the token stays consumed."""
    pass


class ActionConfirmationService:
    """
    Issues and redeems single-use confirmations.

    RESPONSIBILITIES:
    - Hold pending confirmations keyed by token
    - Execute each confirmed action exactly once
    - Hand actions to the offline queue when the backend is unreachable

    BOUNDARIES:
    - NEVER retries a failed action on its own
    """

    def __init__(
        self,
        executor: ActionExecutorInterface,
        queue: Optional[ActionQueue] = None,
        ttl_seconds: float = 300.0,
        emitter: Optional[AnalyticsEmitter] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._executor = executor
        self._queue = queue
        self._ttl = timedelta(seconds=ttl_seconds)
        self._emitter = emitter
        self._clock = clock
        self._confirmations: dict[str, ActionConfirmation] = {}

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    async def request_confirmation(
        self,
        action_type: str,
        parameters: dict[str, Any],
        scope: Optional[ActionScope] = None,
    ) -> ActionConfirmation:
        """
        Create a pending confirmation for a mutating action.

        Raises:
            UnknownActionError: If the action type is not a mutating action
        """
        route = ACTION_ROUTES.get(action_type)
        if route is None:
            raise UnknownActionError(f"Unknown or non-mutating action: {action_type}")

        now = self._clock()
        confirmation = ActionConfirmation(
            confirmation_token=secrets.token_urlsafe(32),
            idempotency_key=str(uuid4()),
            action_type=action_type,
            scope=scope or route.scope,
            parameters=dict(parameters),
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._confirmations[confirmation.confirmation_token] = confirmation

        logger.info(
            "confirmation_requested",
            action_id=confirmation.action_id,
            action_type=action_type,
            scope=confirmation.scope.value,
        )
        await self._emit(
            AnalyticsEventType.CONFIRMATION_REQUESTED,
            action_id=confirmation.action_id,
            action_type=action_type,
            scope=confirmation.scope.value,
        )
        return confirmation

    # -------------------------------------------------------------------------
    # Redeem
    # -------------------------------------------------------------------------

    async def confirm(self, token: str, idempotency_key: str) -> ActionExecutionResult:
        """
        Execute the action behind a token, exactly once.

        Raises:
            ConfirmationNotFoundError: Unknown token
            ConfirmationConsumedError: Token already confirmed or cancelled
            ConfirmationExpiredError: Token past its expiry
            IdempotencyKeyMismatchError: Key does not match the token
            ActionExecutionError: The executor rejected the action
        """
        confirmation = self._confirmations.get(token)
        if confirmation is None:
            raise ConfirmationNotFoundError("Unknown confirmation token")

        if confirmation.status == ConfirmationStatus.EXPIRED:
            await self._reject(confirmation, "expired")
            raise ConfirmationExpiredError("Confirmation has expired")
        if confirmation.status.is_consumed:
            await self._reject(confirmation, f"already_{confirmation.status.value}")
            raise ConfirmationConsumedError(
                f"Confirmation already consumed (status: {confirmation.status.value})"
            )
        if confirmation.is_expired(self._clock()):
            self._set_status(confirmation, ConfirmationStatus.EXPIRED)
            await self._reject(confirmation, "expired")
            raise ConfirmationExpiredError("Confirmation has expired")
        if not secrets.compare_digest(confirmation.idempotency_key, idempotency_key):
            await self._reject(confirmation, "idempotency_key_mismatch")
            raise IdempotencyKeyMismatchError("Idempotency key does not match")

        # Consumed from here on; nothing above this line awaits after the checks
        confirmation = self._set_status(confirmation, ConfirmationStatus.EXECUTING)
        route = ACTION_ROUTES[confirmation.action_type]

        try:
            response = await self._executor.execute(
                route.action_type,
                route.entity,
                confirmation.parameters,
                idempotency_key=confirmation.idempotency_key,
            )
        except ExecutorUnavailableError as e:
            if self._queue is None:
                self._set_status(confirmation, ConfirmationStatus.FAILED)
                raise ActionExecutionError(f"Backend unavailable: {e}") from e
            queued_id = await self._queue.enqueue(
                route.action_type,
                route.entity,
                confirmation.parameters,
                idempotency_key=confirmation.idempotency_key,
                priority=(
                    ActionPriority.HIGH
                    if route.scope == ActionScope.FINANCIAL_DATA
                    else ActionPriority.MEDIUM
                ),
            )
            self._set_status(confirmation, ConfirmationStatus.QUEUED)
            logger.info("confirmation_queued", action_id=confirmation.action_id, queued_action_id=queued_id)
            await self._emit(
                AnalyticsEventType.CONFIRMED,
                action_id=confirmation.action_id,
                action_type=confirmation.action_type,
                queued=True,
            )
            return ActionExecutionResult(
                action_id=confirmation.action_id,
                action_type=confirmation.action_type,
                success=False,
                queued=True,
                queued_action_id=queued_id,
                error=str(e),
            )
        except Exception as e:
            self._set_status(confirmation, ConfirmationStatus.FAILED)
            logger.error(
                "confirmed_action_failed",
                action_id=confirmation.action_id,
                action_type=confirmation.action_type,
                error=str(e),
            )
            if isinstance(e, ExecutorError):
                raise ActionExecutionError(str(e)) from e
            raise

        self._set_status(confirmation, ConfirmationStatus.EXECUTED)
        logger.info("confirmation_executed", action_id=confirmation.action_id)
        await self._emit(
            AnalyticsEventType.CONFIRMED,
            action_id=confirmation.action_id,
            action_type=confirmation.action_type,
            queued=False,
        )
        return ActionExecutionResult(
            action_id=confirmation.action_id,
            action_type=confirmation.action_type,
            success=True,
            result=response or {},
        )

    async def cancel(self, token: str) -> ActionConfirmation:
        """
        Invalidate a pending confirmation.

        Raises:
            ConfirmationNotFoundError: Unknown token
            ConfirmationConsumedError: Token already used
        """
        confirmation = self._confirmations.get(token)
        if confirmation is None:
            raise ConfirmationNotFoundError("Unknown confirmation token")
        if confirmation.status.is_consumed:
            raise ConfirmationConsumedError(
                f"Confirmation already consumed (status: {confirmation.status.value})"
            )
        confirmation = self._set_status(confirmation, ConfirmationStatus.CANCELLED)
        await self._emit(
            AnalyticsEventType.CANCELLED,
            action_id=confirmation.action_id,
            action_type=confirmation.action_type,
        )
        return confirmation

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, token: str) -> Optional[ActionConfirmation]:
        return self._confirmations.get(token)

    def time_remaining(self, token: str) -> timedelta:
        """Countdown for the UI: max(0, expires_at - now); zero once consumed."""
        confirmation = self._confirmations.get(token)
        if confirmation is None:
            raise ConfirmationNotFoundError("Unknown confirmation token")
        if confirmation.status.is_consumed:
            return timedelta(0)
        return max(timedelta(0), confirmation.expires_at - self._clock())

    def purge_finished(self) -> int:
        """Forget confirmations that can no longer be confirmed."""
        now = self._clock()
        stale = [
            token for token, c in self._confirmations.items()
            if (c.status.is_consumed and c.status != ConfirmationStatus.EXECUTING)
            or (c.status == ConfirmationStatus.PENDING and c.is_expired(now))
        ]
        for token in stale:
            del self._confirmations[token]
        return len(stale)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _set_status(self, confirmation: ActionConfirmation, status: ConfirmationStatus) -> ActionConfirmation:
        updated = confirmation.model_copy(update={"status": status})
        self._confirmations[confirmation.confirmation_token] = updated
        return updated

    async def _reject(self, confirmation: ActionConfirmation, reason: str) -> None:
        logger.warning(
            "confirmation_rejected",
            action_id=confirmation.action_id,
            reason=reason,
        )
        await self._emit(
            AnalyticsEventType.CONFIRMATION_REJECTED,
            action_id=confirmation.action_id,
            action_type=confirmation.action_type,
            reason=reason,
        )

    async def _emit(self, event_type: AnalyticsEventType, **payload) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, payload)
