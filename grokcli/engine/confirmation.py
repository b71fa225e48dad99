"""Confirmation gate for mutating operations.

One gate per interactive session. It owns the only mutable state shared
between concurrent tool executions: the session flags and the single
outstanding PendingConfirmation. Both are guarded by one asyncio.Lock,
so a second request waits for the first decision instead of stacking
prompts in front of the human.

Two ways to answer a prompt:

- construct the gate with a ``decision_callback`` (CLI driver), or
- subscribe with add_listener() and call confirm()/reject() when the
  human answers (event-driven UI).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .config import DecisionCallback
from .models import ALL_OPERATIONS, Decision, DecisionKind, PendingConfirmation

logger = logging.getLogger(__name__)

ConfirmationListener = Callable[[PendingConfirmation], None]


class ConfirmationGate:
    """Suspends pending operations until a human decision arrives."""

    def __init__(self, decision_callback: DecisionCallback | None = None) -> None:
        self._decision_callback = decision_callback
        self._flags: dict[str, bool] = {}
        self._lock = asyncio.Lock()
        self._pending: PendingConfirmation | None = None
        self._answer: asyncio.Future[Decision] | None = None
        self._listeners: list[ConfirmationListener] = []

    @property
    def pending(self) -> PendingConfirmation | None:
        """The operation currently waiting for a decision, if any."""
        return self._pending

    def get_session_flags(self) -> dict[str, bool]:
        return dict(self._flags)

    def set_session_flag(self, category: str, value: bool) -> None:
        self._flags[category] = value
        logger.info("Session flag %s=%s", category, value)

    def reset(self) -> None:
        """Clear all session flags (conversation clear)."""
        self._flags.clear()
        logger.info("Session flags reset")

    def is_covered(self, category: str) -> bool:
        return self._flags.get(ALL_OPERATIONS, False) or self._flags.get(category, False)

    def add_listener(self, listener: ConfirmationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConfirmationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def request(self, pending: PendingConfirmation) -> Decision:
        """Resolve once a decision exists for ``pending``."""
        if self.is_covered(pending.category):
            return Decision.approved()

        async with self._lock:
            # A decision made while we waited may have set the flag.
            if self.is_covered(pending.category):
                return Decision.approved()

            self._pending = pending
            try:
                decision = await self._ask(pending)
            finally:
                self._pending = None
                self._answer = None
            if decision.kind == DecisionKind.APPROVED_REMEMBER:
                self.set_session_flag(pending.category, True)

        logger.info(
            "Confirmation %s(%s) category=%s -> %s",
            pending.operation, pending.target[:80], pending.category,
            decision.kind.value,
        )
        return decision

    async def _ask(self, pending: PendingConfirmation) -> Decision:
        if self._decision_callback is not None:
            return await self._decision_callback(pending)

        self._answer = asyncio.get_running_loop().create_future()
        for listener in list(self._listeners):
            try:
                listener(pending)
            except Exception:
                logger.exception("Confirmation listener failed")
        return await self._answer

    def resolve(self, decision: Decision) -> bool:
        """Answer the outstanding request. Returns False if nothing is pending."""
        if self._answer is None or self._answer.done():
            return False
        self._answer.set_result(decision)
        return True

    def confirm(self, remember: bool = False) -> bool:
        return self.resolve(
            Decision.approved_remember() if remember else Decision.approved()
        )

    def reject(self, feedback: str | None = None) -> bool:
        return self.resolve(Decision.rejected(feedback))
