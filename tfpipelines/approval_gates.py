"""
Approval Gate Orchestration

Blocking approval gates that halt pipeline progression until enough distinct
reviewers approve, a reviewer rejects, the gate times out, or the pipeline is
cancelled.

Key Features:
- Event-driven blocking (condition variable, no polling)
- Timeout clock starts when the gate is created
- Distinct reviewer identities only; duplicates never advance a gate
- Fail-closed: a rejection wins over approvals delivered in the same batch
- Audit trail (every decision logged to JSONL)

States:
    pending -> approved | rejected | timed_out | cancelled   (all terminal)
"""

import json
import logging
import queue
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from tfpipelines.error_handling import GateRejected, GateTimedOut, PipelineCancelled
from tfpipelines.schemas import (
    ApprovalAction,
    ApprovalDecision,
    ApprovalEvent,
    ApprovalGateConfig,
    GateState,
)

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now().isoformat()


class ApprovalPolicy:
    """
    Environment protection rules: which reviewers may decide for which environment.

    The reviewer lists live outside the pipeline (config file or the hosting
    platform); gates only query them. An environment without a list accepts any
    reviewer identity.
    """

    def __init__(self, reviewers: Optional[Dict[str, Iterable[str]]] = None):
        self._reviewers = {env: frozenset(ids) for env, ids in (reviewers or {}).items()}

    def is_authorized(self, environment: str, reviewer: str) -> bool:
        allowed = self._reviewers.get(environment)
        if allowed is None:
            return True
        return reviewer in allowed


class ApprovalAuditLog:
    """
    JSONL audit trail of gate decisions.

    One file per day, one decision per line.
    """

    def __init__(self, audit_log_dir: Optional[Path] = None):
        """
        Args:
            audit_log_dir: Directory for audit logs (defaults to .tfpipelines/audit)
        """
        self.audit_log_dir = audit_log_dir or Path(".tfpipelines/audit")
        self.audit_log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now().strftime("%Y%m%d")
        self.audit_log_file = self.audit_log_dir / f"approvals-{today}.jsonl"

    def record(self, decision: ApprovalDecision, config: ApprovalGateConfig) -> None:
        """
        Log approval decision to audit trail.

        Args:
            decision: Approval decision
            config: Gate configuration
        """
        audit_entry = {
            "timestamp": decision.timestamp,
            "gate_id": decision.gate_id,
            "gate_name": config.gate_name,
            "environment": decision.environment,
            "state": decision.state.value,
            "approvers": decision.approvers,
            "rejected_by": decision.rejected_by,
            "required_approvers": config.required_approvers,
            "comment": decision.comment,
        }

        with open(self.audit_log_file, 'a', encoding='utf-8') as f:
            f.write(json.dumps(audit_entry) + "\n")

    def history(
        self,
        gate_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get approval history from audit log.

        Args:
            gate_id: Optional filter by gate ID
            limit: Maximum number of entries to return

        Returns:
            List of approval decisions (most recent first)
        """
        entries = []

        for log_file in sorted(self.audit_log_dir.glob("approvals-*.jsonl")):
            with open(log_file, 'r', encoding='utf-8') as f:
                for line in f:
                    try:
                        entry = json.loads(line.strip())
                    except json.JSONDecodeError:
                        continue

                    if gate_id and entry.get("gate_id") != gate_id:
                        continue

                    entries.append(entry)

        return entries[-limit:][::-1]

    def stats(self) -> Dict[str, Any]:
        """
        Get approval statistics.

        Returns:
            Dict with decision counts per terminal state and approval rate
        """
        history = self.history(limit=10_000)
        total = len(history)
        counts = {state.value: 0 for state in GateState if state.terminal}
        for entry in history:
            state = entry.get("state")
            if state in counts:
                counts[state] += 1

        approval_rate = (counts["approved"] / total * 100) if total > 0 else 0
        return {"total_decisions": total, **counts, "approval_rate": approval_rate}


class ApprovalGate:
    """
    Blocking approval gate.

    Example:
        gate = ApprovalGate(
            ApprovalGateConfig(
                gate_id="deploy-production",
                gate_name="Deploy approval",
                environment="production",
                required_approvers=1,
            ),
            policy=ApprovalPolicy({"production": ["alice", "bob"]}),
        )

        # From another thread (reviewer UI, webhook, console prompt):
        gate.submit(ApprovalEvent(reviewer="alice", action="approve", timestamp=now_iso()))

        decision = gate.require_approval()   # raises GateRejected / GateTimedOut
    """

    def __init__(
        self,
        config: ApprovalGateConfig,
        policy: Optional[ApprovalPolicy] = None,
        audit_log: Optional[ApprovalAuditLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.policy = policy or ApprovalPolicy()
        self.audit_log = audit_log
        self._clock = clock
        self._cond = threading.Condition()

        # The timeout clock starts now, not at the first event
        self._deadline = clock() + config.timeout_seconds

        self._state = GateState.PENDING
        self._approvers: List[str] = []
        self._comment: Optional[str] = None
        self._decision: Optional[ApprovalDecision] = None

        logger.debug(
            "Gate %s created for %s (required=%d, timeout=%ds)",
            config.gate_id, config.environment, config.required_approvers, config.timeout_seconds,
        )

    @property
    def state(self) -> GateState:
        with self._cond:
            self._expire_if_due()
            return self._state

    @property
    def approvers(self) -> List[str]:
        with self._cond:
            return list(self._approvers)

    @property
    def decision(self) -> Optional[ApprovalDecision]:
        return self._decision

    def remaining_seconds(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def submit(self, *events: ApprovalEvent) -> GateState:
        """
        Deliver one or more reviewer events atomically.

        A rejection anywhere in the batch is authoritative: the gate moves to
        rejected even if the approvals in the same batch would have been enough.

        Returns:
            The gate state after processing the events
        """
        with self._cond:
            self._expire_if_due()
            if self._state.terminal:
                logger.info(
                    "Gate %s already %s; ignoring %d event(s)",
                    self.config.gate_id, self._state.value, len(events),
                )
                return self._state

            accepted = [event for event in events if self._is_authorized(event)]

            rejection = next(
                (event for event in accepted if event.action is ApprovalAction.REJECT),
                None,
            )
            if rejection is not None:
                self._finish(
                    GateState.REJECTED,
                    rejected_by=rejection.reviewer,
                    comment=rejection.comment,
                )
                return self._state

            for event in accepted:
                if not self._count_approval(event):
                    continue
                if len(self._approvers) >= self.config.required_approvers:
                    self._finish(GateState.APPROVED, comment=self._comment)
                    break

            return self._state

    def cancel(self, reason: str = "pipeline cancelled") -> None:
        """Tear the gate down without side effects beyond the audit record."""
        with self._cond:
            if not self._state.terminal:
                self._finish(GateState.CANCELLED, comment=reason)

    def wait(self) -> ApprovalDecision:
        """
        Block until the gate reaches a terminal state.

        Woken by events, by cancellation, or by the deadline.

        Returns:
            The terminal ApprovalDecision
        """
        with self._cond:
            while True:
                self._expire_if_due()
                if self._state.terminal:
                    return self._decision
                self._cond.wait(timeout=self._deadline - self._clock())

    def require_approval(self) -> ApprovalDecision:
        """
        Block until decided and raise unless approved.

        Raises:
            GateRejected: A reviewer rejected
            GateTimedOut: The deadline passed first
            PipelineCancelled: The gate was cancelled
        """
        decision = self.wait()
        gate = self.config.gate_name

        if decision.state is GateState.APPROVED:
            return decision
        if decision.state is GateState.REJECTED:
            reason = f": {decision.comment}" if decision.comment else ""
            raise GateRejected(
                f"{gate} rejected by {decision.rejected_by}{reason}",
                context={"gate_id": decision.gate_id},
            )
        if decision.state is GateState.TIMED_OUT:
            raise GateTimedOut(
                f"{gate} timed out after {self.config.timeout_seconds}s "
                f"with {len(decision.approvers)}/{self.config.required_approvers} approvals",
                context={"gate_id": decision.gate_id},
            )
        raise PipelineCancelled(f"{gate} cancelled", context={"gate_id": decision.gate_id})

    def _is_authorized(self, event: ApprovalEvent) -> bool:
        if self.policy.is_authorized(self.config.environment, event.reviewer):
            return True
        logger.warning(
            "Reviewer %s is not authorized for environment %s; event ignored",
            event.reviewer, self.config.environment,
        )
        return False

    def _count_approval(self, event: ApprovalEvent) -> bool:
        reviewer = event.reviewer
        if reviewer in self.config.excluded_reviewers:
            logger.warning(
                "Reviewer %s already approved an earlier gate; approval for %s not counted",
                reviewer, self.config.gate_id,
            )
            return False
        if reviewer in self._approvers:
            logger.info("Duplicate approval from %s on gate %s ignored", reviewer, self.config.gate_id)
            return False
        self._approvers.append(reviewer)
        if event.comment:
            self._comment = event.comment
        logger.info(
            "Gate %s: approval %d/%d from %s",
            self.config.gate_id, len(self._approvers), self.config.required_approvers, reviewer,
        )
        return True

    def _expire_if_due(self) -> None:
        if not self._state.terminal and self._clock() >= self._deadline:
            self._finish(GateState.TIMED_OUT)

    def _finish(
        self,
        state: GateState,
        rejected_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        # Caller holds self._cond
        self._state = state
        self._decision = ApprovalDecision(
            gate_id=self.config.gate_id,
            environment=self.config.environment,
            state=state,
            approvers=list(self._approvers),
            rejected_by=rejected_by,
            timestamp=now_iso(),
            comment=comment[:1000] if comment else None,
        )
        logger.info("Gate %s -> %s", self.config.gate_id, state.value)
        if self.audit_log is not None:
            self.audit_log.record(self._decision, self.config)
        self._cond.notify_all()


class StaticApprovalSource:
    """
    Pre-supplied reviewer decisions.

    Used when approvals come from outside the process, e.g. the hosting
    platform's environment protection rule or CLI flags. Each reviewer is
    delivered as a separate event, in order, so a later gate can still be
    satisfied by reviewers an earlier gate did not need.
    """

    def __init__(self, approvers: Iterable[str] = (), rejecters: Iterable[str] = ()):
        self.approvers = list(approvers)
        self.rejecters = list(rejecters)

    def attach(self, gate: ApprovalGate) -> None:
        if self.rejecters:
            gate.submit(*[
                ApprovalEvent(reviewer=r, action=ApprovalAction.REJECT, timestamp=now_iso())
                for r in self.rejecters
            ])
        for reviewer in self.approvers:
            if gate.state.terminal:
                break
            gate.submit(ApprovalEvent(reviewer=reviewer, action=ApprovalAction.APPROVE, timestamp=now_iso()))

    def detach(self) -> None:
        pass


class ConsoleApprovalSource:
    """
    Interactive reviewer prompt.

    Runs in a daemon thread, asking for a reviewer identity and a yes/no
    decision until the gate closes. Input waits are bounded by the gate's
    remaining time; the gate itself enforces the deadline.
    """

    def __init__(self, input_func: Callable[[str], str] = input, max_retries: int = 5):
        self._input = input_func
        self.max_retries = max_retries
        self._thread: Optional[threading.Thread] = None

    def attach(self, gate: ApprovalGate) -> None:
        self._thread = threading.Thread(target=self._prompt_loop, args=(gate,), daemon=True)
        self._thread.start()

    def detach(self) -> None:
        if self._thread is not None:
            self._thread.join(timeout=0.1)

    def _prompt_loop(self, gate: ApprovalGate) -> None:
        while not gate.state.terminal:
            try:
                reviewer = self._get_user_input_with_timeout(
                    "Reviewer identity: ", gate.remaining_seconds()
                ).strip()
                if not reviewer:
                    continue
                response = self._get_validated_input(
                    "Approve? (yes/no): ", ["yes", "no"], gate.remaining_seconds()
                )
                comment = self._get_user_input_with_timeout(
                    "Comment (optional): ", gate.remaining_seconds()
                ).strip() or None
            except (EOFError, TimeoutError, RuntimeError) as e:
                logger.info("Console approval input ended: %s", e)
                return

            action = ApprovalAction.APPROVE if response == "yes" else ApprovalAction.REJECT
            gate.submit(ApprovalEvent(
                reviewer=reviewer, action=action, timestamp=now_iso(), comment=comment
            ))

    def _get_user_input_with_timeout(self, prompt: str, timeout_seconds: float) -> str:
        """
        Get user input with timeout using threading.

        Raises:
            TimeoutError: If the user doesn't respond within timeout
            EOFError: If input is closed
        """
        result_queue = queue.Queue()

        def read_input():
            try:
                result_queue.put(self._input(prompt))
            except EOFError:
                result_queue.put(None)
            except Exception as e:
                result_queue.put(e)

        threading.Thread(target=read_input, daemon=True).start()

        try:
            user_input = result_queue.get(timeout=max(timeout_seconds, 0.01))
        except queue.Empty:
            raise TimeoutError(f"No input within {timeout_seconds:.0f} seconds")

        if isinstance(user_input, Exception):
            raise user_input
        if user_input is None:
            raise EOFError("Input cancelled (EOF)")
        return user_input

    def _get_validated_input(
        self,
        prompt: str,
        valid_choices: List[str],
        timeout_seconds: float,
    ) -> str:
        """
        Get validated input with a retry limit.

        Raises:
            RuntimeError: If max retries exceeded
        """
        for attempt in range(self.max_retries):
            user_input = self._get_user_input_with_timeout(prompt, timeout_seconds).strip().lower()
            if user_input in valid_choices:
                return user_input
            remaining = self.max_retries - attempt - 1
            if remaining:
                print(f"Invalid choice: '{user_input}'. Please try again ({remaining} attempts remaining)")

        raise RuntimeError(
            f"Maximum retry attempts ({self.max_retries}) exceeded for user input. "
            f"Valid choices were: {', '.join(valid_choices)}"
        )
