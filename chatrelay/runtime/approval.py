from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum

from .types import ToolInvocationBlock

logger = logging.getLogger(__name__)


class ApprovalOutcome(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalConflictError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class PendingApproval:
    invocation_id: str
    invocation: ToolInvocationBlock
    future: asyncio.Future[ApprovalOutcome]

    async def wait(self) -> ApprovalOutcome:
        # Shield so that cancelling the waiter does not leave the entry unresolvable.
        return await asyncio.shield(self.future)

    @property
    def done(self) -> bool:
        return self.future.done()


class ApprovalRegister:
    """
    Outstanding approval requests keyed by invocation id.

    Each entry is resolved exactly once. Resolving an unknown or already-resolved id is a
    no-op, so duplicate UI events are harmless.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingApproval] = {}

    def register(self, invocation_id: str, invocation: ToolInvocationBlock) -> PendingApproval:
        if invocation_id in self._pending:
            raise ApprovalConflictError(f"Approval already pending for invocation {invocation_id}")
        loop = asyncio.get_running_loop()
        pending = PendingApproval(invocation_id=invocation_id, invocation=invocation, future=loop.create_future())
        self._pending[invocation_id] = pending
        return pending

    def resolve(self, invocation_id: str, outcome: ApprovalOutcome) -> bool:
        pending = self._pending.pop(invocation_id, None)
        if pending is None:
            logger.debug("Ignoring %s for unknown approval %s", outcome.value, invocation_id)
            return False
        if pending.future.done():
            return False
        pending.future.set_result(outcome)
        return True

    def approve(self, invocation_id: str) -> bool:
        return self.resolve(invocation_id, ApprovalOutcome.APPROVED)

    def reject(self, invocation_id: str) -> bool:
        return self.resolve(invocation_id, ApprovalOutcome.REJECTED)

    def cancel(self, invocation_id: str) -> bool:
        return self.resolve(invocation_id, ApprovalOutcome.CANCELLED)

    def cancel_all(self) -> int:
        count = 0
        for invocation_id in list(self._pending):
            if self.resolve(invocation_id, ApprovalOutcome.REJECTED):
                count += 1
        return count

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def __contains__(self, invocation_id: object) -> bool:
        return invocation_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
