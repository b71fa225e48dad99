import asyncio

import pytest
from unittest.mock import AsyncMock

from grokcli.engine.confirmation import ConfirmationGate
from grokcli.engine.models import (
    ALL_OPERATIONS,
    CATEGORY_BASH,
    CATEGORY_FILE,
    Decision,
    DecisionKind,
    PendingConfirmation,
)


def _pending(target: str = "rm -rf build", category: str = CATEGORY_BASH) -> PendingConfirmation:
    return PendingConfirmation("Run bash command", target, category)


@pytest.mark.asyncio
async def test_callback_decision_is_returned() -> None:
    callback = AsyncMock(return_value=Decision.rejected("not now"))
    gate = ConfirmationGate(callback)

    decision = await gate.request(_pending())

    assert decision.kind == DecisionKind.REJECTED
    assert decision.feedback == "not now"
    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_remember_sets_category_flag_only() -> None:
    callback = AsyncMock(return_value=Decision.approved_remember())
    gate = ConfirmationGate(callback)

    await gate.request(_pending())
    second = await gate.request(_pending("rm other"))
    await gate.request(_pending("a.txt", CATEGORY_FILE))

    assert second.is_approved
    assert gate.get_session_flags() == {CATEGORY_BASH: True}
    # bash asked once, file asked once
    assert callback.await_count == 2


@pytest.mark.asyncio
async def test_all_operations_flag_short_circuits_every_category() -> None:
    callback = AsyncMock()
    gate = ConfirmationGate(callback)
    gate.set_session_flag(ALL_OPERATIONS, True)

    assert (await gate.request(_pending())).is_approved
    assert (await gate.request(_pending("x", CATEGORY_FILE))).is_approved
    callback.assert_not_awaited()


@pytest.mark.asyncio
async def test_reset_clears_flags() -> None:
    gate = ConfirmationGate(AsyncMock(return_value=Decision.approved_remember()))
    await gate.request(_pending())

    gate.reset()

    assert gate.get_session_flags() == {}
    assert not gate.is_covered(CATEGORY_BASH)


@pytest.mark.asyncio
async def test_concurrent_requests_are_asked_one_at_a_time() -> None:
    gate = ConfirmationGate()
    seen: list[PendingConfirmation] = []
    gate.add_listener(seen.append)

    first = asyncio.create_task(gate.request(_pending("one")))
    second = asyncio.create_task(gate.request(_pending("two")))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert [p.target for p in seen] == ["one"]
    assert gate.pending.target == "one"

    assert gate.confirm(remember=True)
    assert (await first).kind == DecisionKind.APPROVED_REMEMBER
    # The remembered flag covers the waiter without a second prompt.
    assert (await second).is_approved
    assert [p.target for p in seen] == ["one"]
    assert gate.pending is None


@pytest.mark.asyncio
async def test_second_request_prompts_after_plain_approval() -> None:
    gate = ConfirmationGate()
    seen: list[PendingConfirmation] = []
    gate.add_listener(seen.append)

    first = asyncio.create_task(gate.request(_pending("one")))
    second = asyncio.create_task(gate.request(_pending("two")))
    await asyncio.sleep(0)
    gate.confirm()
    await first
    await asyncio.sleep(0)

    assert [p.target for p in seen] == ["one", "two"]
    gate.reject("use git clean instead")
    decision = await second
    assert decision.kind == DecisionKind.REJECTED
    assert decision.feedback == "use git clean instead"


def test_resolve_without_pending_returns_false() -> None:
    gate = ConfirmationGate()
    assert gate.confirm() is False
    assert gate.reject() is False


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_decision() -> None:
    gate = ConfirmationGate()

    def broken(pending: PendingConfirmation) -> None:
        raise RuntimeError("ui gone")

    gate.add_listener(broken)
    task = asyncio.create_task(gate.request(_pending()))
    await asyncio.sleep(0)
    gate.confirm()

    assert (await task).is_approved
