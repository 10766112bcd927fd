"""Task dependency graph used by the cluster executor.

The executor only depends on the narrow ``DependencyGraph`` protocol:
ready nodes, the dependency list of a node, and node status updates.
``TaskGraph`` is the in-memory implementation built from a RunPlan. It
also owns failure propagation: with ``fail_fast`` the first failed task
fails the run and skips everything not yet started; with ``continue``
only the transitive dependents of the failed task are skipped.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from agentcluster.cluster.errors import GraphError
from agentcluster.cluster.plan import RunPlan, TaskSpec
from agentcluster.logging import get_logger

logger = get_logger(__name__)


class NodeStatus(str, Enum):
    """Scheduling status of a graph node."""

    pending = "pending"
    running = "running"
    blocked = "blocked"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.completed, NodeStatus.failed, NodeStatus.skipped)


VALID_NODE_TRANSITIONS: dict[NodeStatus, set[NodeStatus]] = {
    # pending -> failed covers spawn failures that exhaust the retry budget
    NodeStatus.pending: {NodeStatus.running, NodeStatus.failed, NodeStatus.skipped},
    # running/blocked -> pending is a retry
    NodeStatus.running: {
        NodeStatus.pending,
        NodeStatus.blocked,
        NodeStatus.completed,
        NodeStatus.failed,
    },
    NodeStatus.blocked: {
        NodeStatus.pending,
        NodeStatus.running,
        NodeStatus.completed,
        NodeStatus.failed,
    },
    NodeStatus.completed: set(),
    NodeStatus.failed: set(),
    NodeStatus.skipped: set(),
}


class DependencyGraph(Protocol):
    """What the executor needs from a graph engine."""

    run_failed: bool

    def ready_nodes(self) -> list[str]: ...

    def dependencies(self, task_id: str) -> list[str]: ...

    def mark(self, task_id: str, status: NodeStatus, reason: str | None = None) -> None: ...

    def is_finished(self) -> bool: ...


@dataclass
class TaskNode:
    """Runtime state of one task."""

    spec: TaskSpec
    order: int
    status: NodeStatus = NodeStatus.pending
    attempts: int = 0
    approved: bool = False
    reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    history: list[NodeStatus] = field(default_factory=list)

    @property
    def task_id(self) -> str:
        return self.spec.id


class TaskGraph:
    """In-memory DAG of TaskNodes.

    Args:
        tasks: Task specs in declaration order.
        failure_mode: "fail_fast" or "continue".

    Raises:
        GraphError: Unknown dependency, self-dependency or cycle.
    """

    def __init__(self, tasks: Iterable[TaskSpec], failure_mode: str = "fail_fast") -> None:
        self.failure_mode = failure_mode
        self.run_failed = False
        self.failure_reason: str | None = None
        self._nodes: dict[str, TaskNode] = {}
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for order, spec in enumerate(tasks):
            if spec.id in self._nodes:
                raise GraphError(f"Duplicate task id: {spec.id}")
            self._nodes[spec.id] = TaskNode(spec=spec, order=order)
        for node in self._nodes.values():
            for dep in node.spec.depends_on:
                if dep == node.task_id:
                    raise GraphError(f"Task {dep} depends on itself")
                if dep not in self._nodes:
                    raise GraphError(f"Task {node.task_id} depends on unknown task {dep}")
                self._dependents[dep].append(node.task_id)
        self._order = self._topological_order()
        self._logger = logger.bind(component="TaskGraph")

    @classmethod
    def from_plan(cls, plan: RunPlan, failure_mode: str = "fail_fast") -> TaskGraph:
        return cls(plan.tasks, failure_mode=plan.failure_mode or failure_mode)

    def _topological_order(self) -> list[str]:
        # Kahn's algorithm; leftover nodes sit on a cycle
        in_degree = {tid: len(n.spec.depends_on) for tid, n in self._nodes.items()}
        queue = deque(tid for tid, deg in in_degree.items() if deg == 0)
        order: list[str] = []
        while queue:
            tid = queue.popleft()
            order.append(tid)
            for dependent in self._dependents.get(tid, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
        if len(order) != len(self._nodes):
            cyclic = sorted(tid for tid, deg in in_degree.items() if deg > 0)
            raise GraphError(f"Dependency cycle among tasks: {', '.join(cyclic)}")
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    @property
    def nodes(self) -> list[TaskNode]:
        return sorted(self._nodes.values(), key=lambda n: n.order)

    def node(self, task_id: str) -> TaskNode:
        try:
            return self._nodes[task_id]
        except KeyError:
            raise GraphError(f"Unknown task: {task_id}") from None

    def topological_order(self) -> list[str]:
        return list(self._order)

    def dependencies(self, task_id: str) -> list[str]:
        """Direct dependencies in declared order."""
        return list(self.node(task_id).spec.depends_on)

    def dependents(self, task_id: str) -> list[str]:
        return list(self._dependents.get(task_id, []))

    def descendants(self, task_id: str) -> list[str]:
        seen: set[str] = set()
        stack = list(self._dependents.get(task_id, []))
        while stack:
            tid = stack.pop()
            if tid not in seen:
                seen.add(tid)
                stack.extend(self._dependents.get(tid, []))
        return sorted(seen, key=lambda t: self._nodes[t].order)

    def _dependencies_met(self, node: TaskNode) -> bool:
        return all(
            self._nodes[dep].status is NodeStatus.completed
            for dep in node.spec.depends_on
        )

    def ready_nodes(self) -> list[str]:
        """Pending, approved nodes whose dependencies all completed.

        Ordered by priority (highest first), then declaration order.
        """
        if self.run_failed:
            return []
        ready = [
            n
            for n in self._nodes.values()
            if n.status is NodeStatus.pending
            and self._dependencies_met(n)
            and (n.approved or not n.spec.decision_level.needs_approval)
        ]
        ready.sort(key=lambda n: (-n.spec.priority, n.order))
        return [n.task_id for n in ready]

    def awaiting_approval(self) -> list[str]:
        return [
            n.task_id
            for n in self.nodes
            if n.status is NodeStatus.pending
            and not n.approved
            and n.spec.decision_level.needs_approval
            and self._dependencies_met(n)
        ]

    def counts(self) -> dict[NodeStatus, int]:
        result = {status: 0 for status in NodeStatus}
        for n in self._nodes.values():
            result[n.status] += 1
        return result

    def is_finished(self) -> bool:
        """True when nothing is running and nothing more can start."""
        statuses = [n.status for n in self._nodes.values()]
        if any(s in (NodeStatus.running, NodeStatus.blocked) for s in statuses):
            return False
        if self.run_failed:
            return True
        if all(s.is_terminal for s in statuses):
            return True
        # Pending nodes left with nothing running: only approvals can help
        return False

    def is_stalled(self) -> bool:
        """Pending work exists but only approvals could unblock it."""
        if self.is_finished():
            return False
        active = any(
            n.status in (NodeStatus.running, NodeStatus.blocked)
            for n in self._nodes.values()
        )
        return not active and not self.ready_nodes()

    @property
    def succeeded(self) -> bool:
        return all(n.status is NodeStatus.completed for n in self._nodes.values())

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def approve(self, task_id: str) -> bool:
        """Release a confirm/vote node for scheduling."""
        node = self.node(task_id)
        if node.approved or node.status is not NodeStatus.pending:
            return False
        node.approved = True
        self._logger.info("task_approved", task_id=task_id)
        return True

    def mark(self, task_id: str, status: NodeStatus, reason: str | None = None) -> None:
        """Apply a status change and its failure propagation.

        Raises:
            GraphError: For an undefined status edge.
        """
        node = self.node(task_id)
        if status is node.status:
            return
        if status not in VALID_NODE_TRANSITIONS[node.status]:
            raise GraphError(
                f"Invalid node transition from {node.status.value} to "
                f"{status.value} for task {task_id}"
            )
        now = datetime.now(timezone.utc)
        node.history.append(node.status)
        node.status = status
        node.reason = reason
        if status is NodeStatus.running and node.started_at is None:
            node.started_at = now
        if status.is_terminal:
            node.finished_at = now
        self._logger.info(
            "task_transition",
            task_id=task_id,
            from_status=node.history[-1].value,
            to_status=status.value,
            reason=reason,
        )
        if status is NodeStatus.failed:
            self._propagate_failure(task_id, reason)

    def _propagate_failure(self, task_id: str, reason: str | None) -> None:
        if self.failure_mode == "fail_fast":
            # The first failure names the run's failure
            if not self.run_failed:
                self.run_failed = True
                self.failure_reason = f"task {task_id} failed: {reason or 'unknown error'}"
            targets = [n.task_id for n in self.nodes if n.status is NodeStatus.pending]
            skip_reason = f"run aborted after {task_id} failed"
        else:
            targets = [
                tid
                for tid in self.descendants(task_id)
                if self._nodes[tid].status is NodeStatus.pending
            ]
            skip_reason = f"upstream task {task_id} failed"
        for tid in targets:
            self.mark(tid, NodeStatus.skipped, skip_reason)

    def abort(self, reason: str) -> list[str]:
        """Fail the run: skip every pending node. Returns skipped ids."""
        self.run_failed = True
        self.failure_reason = reason
        skipped = [n.task_id for n in self.nodes if n.status is NodeStatus.pending]
        for tid in skipped:
            self.mark(tid, NodeStatus.skipped, reason)
        return skipped
