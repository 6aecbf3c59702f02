"""Manual approval gates.

An approval job runs no steps. It holds its place in the run until an
operator records a decision (`pipewright runs approve`) or its timeout
elapses. Decisions live in the run database so they can come from another
process; the gate polls for them.
"""

import asyncio
import logging
from typing import Optional

from pipewright.core.audit import AuditLogger
from pipewright.core.constants import AuditEventType
from pipewright.core.models import Approval
from pipewright.storage.database import Database


logger = logging.getLogger(__name__)


class ApprovalGate:
    """Waits for operator decisions on the approval jobs of one run."""

    def __init__(
        self,
        run_id: str,
        *,
        db: Optional[Database] = None,
        audit: Optional[AuditLogger] = None,
        poll_interval: float = 5.0,
    ) -> None:
        self.run_id = run_id
        self.db = db
        self.audit = audit
        self.poll_interval = poll_interval
        # Decisions made in this process, used when there is no database
        self._decisions: dict[str, Approval] = {}
        self._decided = asyncio.Event()

    def decide(self, approval: Approval) -> None:
        """Record a decision from inside the running process."""
        if self.db is not None:
            self.db.save_approval(approval)
        else:
            self._decisions.setdefault(approval.node_id, approval)
        self._decided.set()

    def _lookup(self, node_id: str) -> Optional[Approval]:
        if node_id in self._decisions:
            return self._decisions[node_id]
        if self.db is not None:
            return self.db.get_approval(self.run_id, node_id)
        return None

    async def _poll(self, node_id: str) -> Approval:
        while True:
            self._decided.clear()
            approval = self._lookup(node_id)
            if approval is not None:
                return approval
            try:
                await asyncio.wait_for(self._decided.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def wait(self, node_id: str, timeout_minutes: Optional[float]) -> Optional[Approval]:
        """Wait for the decision on `node_id`.

        Returns:
            The decision, or None if the timeout elapsed first
        """
        timeout = timeout_minutes * 60 if timeout_minutes is not None else None
        try:
            approval = await asyncio.wait_for(self._poll(node_id), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Approval {node_id} timed out after {timeout_minutes:g} minute(s)")
            self._audit({"node": node_id, "decision": "timeout"})
            return None

        decision = "approved" if approval.approved else "rejected"
        logger.info(f"Approval {node_id} {decision} by {approval.approver}")
        self._audit({
            "node": node_id,
            "decision": decision,
            "approver": approval.approver,
            "comment": approval.comment,
        })
        return approval

    def _audit(self, details: dict) -> None:
        if self.audit is not None:
            self.audit.log_event(AuditEventType.APPROVAL, details)
