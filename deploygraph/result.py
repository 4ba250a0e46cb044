"""Outcome of one deployment attempt."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class NodeState(str, Enum):
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeploymentStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"


@dataclass
class DeploymentResult:
    """
    Attributes:
        instance_id: The journal the attempt ran against.
        status: SUCCESS only when every node succeeded.
        node_states: Final state of every node.
        values: Resolved futures, node id -> value.
        failed: Failed node id -> error reported by the adapter.
        skipped: Nodes resolved from the journal without execution.
        retried: Nodes executed again after a failed or interrupted attempt.
        exports: Export name -> value, for resolved exports only.
    """

    instance_id: str
    status: DeploymentStatus
    node_states: Dict[str, NodeState]
    values: Dict[str, Any] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    exports: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is DeploymentStatus.SUCCESS

    @property
    def unresolved(self) -> List[str]:
        return [nid for nid in self.node_states if nid not in self.values]

    @property
    def blocked(self) -> List[str]:
        return [nid for nid, s in self.node_states.items() if s is NodeState.BLOCKED]

    def get_summary(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "status": self.status.value,
            "succeeded": sum(1 for s in self.node_states.values() if s is NodeState.SUCCEEDED),
            "failed": sorted(self.failed),
            "blocked": self.blocked,
            "skipped": len(self.skipped),
            "retried": len(self.retried),
        }
