"""Tests for the approval register."""

from __future__ import annotations

import asyncio

import pytest

from chatrelay.runtime.approval import ApprovalConflictError, ApprovalOutcome, ApprovalRegister
from chatrelay.runtime.types import ToolInvocationBlock


def _inv(call_id: str = "call_1") -> ToolInvocationBlock:
    return ToolInvocationBlock(id=call_id, name="run_command", input={"command": "ls"})


@pytest.mark.asyncio
async def test_resolve_wakes_the_waiter():
    register = ApprovalRegister()
    pending = register.register("call_1", _inv())

    waiter = asyncio.create_task(pending.wait())
    await asyncio.sleep(0)
    assert register.approve("call_1") is True

    assert await waiter is ApprovalOutcome.APPROVED
    assert "call_1" not in register
    assert len(register) == 0


@pytest.mark.asyncio
async def test_resolve_unknown_or_twice_is_noop():
    register = ApprovalRegister()
    assert register.reject("missing") is False

    pending = register.register("call_1", _inv())
    assert register.cancel("call_1") is True
    assert register.approve("call_1") is False
    assert await pending.wait() is ApprovalOutcome.CANCELLED


@pytest.mark.asyncio
async def test_duplicate_register_conflicts():
    register = ApprovalRegister()
    register.register("call_1", _inv())
    with pytest.raises(ApprovalConflictError):
        register.register("call_1", _inv())


@pytest.mark.asyncio
async def test_cancel_all_rejects_every_entry():
    register = ApprovalRegister()
    a = register.register("a", _inv("a"))
    b = register.register("b", _inv("b"))

    assert [p.invocation_id for p in register.pending()] == ["a", "b"]
    assert register.cancel_all() == 2
    assert await a.wait() is ApprovalOutcome.REJECTED
    assert await b.wait() is ApprovalOutcome.REJECTED
    assert register.cancel_all() == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_entry_resolvable():
    register = ApprovalRegister()
    pending = register.register("call_1", _inv())

    waiter = asyncio.create_task(pending.wait())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert pending.done is False
    assert register.approve("call_1") is True
    assert pending.done is True
