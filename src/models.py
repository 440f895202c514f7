"""
Data models for the node upgrade orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional


class NodeUpgradeState(Enum):
    """Per-node upgrade states, in rollout order."""

    UP_TO_DATE = "upgrade-done"
    UPGRADE_REQUIRED = "upgrade-required"
    CORDON_REQUIRED = "cordon-required"
    POD_DELETION_REQUIRED = "pod-deletion-required"
    DRAIN_REQUIRED = "drain-required"
    WAIT_FOR_POD_READY = "wait-for-pod-ready"
    UNCORDON_REQUIRED = "uncordon-required"
    FAILED = "upgrade-failed"


# Forward edge taken when a state's step succeeds.
NEXT_STATE: Dict[NodeUpgradeState, NodeUpgradeState] = {
    NodeUpgradeState.UPGRADE_REQUIRED: NodeUpgradeState.CORDON_REQUIRED,
    NodeUpgradeState.CORDON_REQUIRED: NodeUpgradeState.POD_DELETION_REQUIRED,
    NodeUpgradeState.POD_DELETION_REQUIRED: NodeUpgradeState.DRAIN_REQUIRED,
    NodeUpgradeState.DRAIN_REQUIRED: NodeUpgradeState.WAIT_FOR_POD_READY,
    NodeUpgradeState.WAIT_FOR_POD_READY: NodeUpgradeState.UNCORDON_REQUIRED,
    NodeUpgradeState.UNCORDON_REQUIRED: NodeUpgradeState.UP_TO_DATE,
}

TERMINAL_STATES = frozenset({NodeUpgradeState.UP_TO_DATE, NodeUpgradeState.FAILED})

# States that consume the maxParallelUpgrades budget.
IN_PROGRESS_STATES = frozenset(
    {
        NodeUpgradeState.CORDON_REQUIRED,
        NodeUpgradeState.POD_DELETION_REQUIRED,
        NodeUpgradeState.DRAIN_REQUIRED,
        NodeUpgradeState.WAIT_FOR_POD_READY,
        NodeUpgradeState.UNCORDON_REQUIRED,
    }
)


@dataclass(frozen=True)
class PodRef:
    """Reference to a pod."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PodRef"]:
        if not value or "/" not in value:
            return None
        namespace, name = value.split("/", 1)
        return cls(namespace=namespace, name=name)


@dataclass
class NodeUpgradeRecord:
    """Upgrade state of a single node, as persisted on the node."""

    node_name: str
    state: Optional[NodeUpgradeState] = None  # None = no stored state
    tracked_pod: Optional[PodRef] = None
    attempt_count: int = 0
    last_transition_time: Optional[datetime] = None
    last_attempt_time: Optional[datetime] = None
    last_error: Optional[str] = None
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class NodeVersion:
    """Running vs desired driver version on a node."""

    current: Optional[str]
    desired: Optional[str]

    @property
    def up_to_date(self) -> bool:
        return self.current is not None and self.current == self.desired


@dataclass
class NodeSnapshot:
    """Everything the coordinator knows about one node for one cycle."""

    record: NodeUpgradeRecord
    version: Optional[NodeVersion] = None
    driver_pod: Optional[Dict] = None
    skip: bool = False


@dataclass
class DrainPolicy:
    """How a node is drained."""

    enable: bool = True
    timeout_seconds: int = 300
    force: bool = False
    delete_empty_dir: bool = False
    pod_selector: Optional[str] = None
    eviction_retry_interval: float = 5.0
    skip_predicates: List[Callable[[Dict], bool]] = field(default_factory=list)


@dataclass
class DrainResult:
    """Outcome of a successful drain."""

    node_name: str
    evicted: List[str] = field(default_factory=list)
    force_deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass
class NodeStepResult:
    """Outcome of one coordinator step on one node."""

    node_name: str
    from_state: Optional[NodeUpgradeState]
    to_state: Optional[NodeUpgradeState]
    status: str  # "advanced", "pending", "failed", "abandoned", "removed", "dry_run"
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None


@dataclass
class CycleReport:
    """Aggregate result of one reconcile cycle."""

    start_time: float
    end_time: Optional[float] = None
    state_counts: Dict[str, int] = field(default_factory=dict)
    failed_nodes: Dict[str, str] = field(default_factory=dict)
    skipped_nodes: List[str] = field(default_factory=list)
    results: List[NodeStepResult] = field(default_factory=list)
    requeue_after: float = 0.0
    error_message: Optional[str] = None

    @property
    def stable(self) -> bool:
        """True when no managed node is mid-rollout."""
        busy = [
            s.value
            for s in NodeUpgradeState
            if s not in TERMINAL_STATES
        ]
        return self.error_message is None and not any(
            self.state_counts.get(s, 0) for s in busy
        )
