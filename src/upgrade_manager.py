"""
Cluster upgrade coordinator.

Each cycle rebuilds a snapshot of every managed node from the cluster API,
admits new nodes into the rollout up to the parallelism budget, and moves
every in-flight node one step forward. Per-node steps run concurrently and
their errors stay with the node they happened on.
"""

import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from backoff import BackoffPolicy
from drain import DrainManager, pod_ref
from errors import SnapshotError, StepTimeoutError, UpgradeError
from models import (
    IN_PROGRESS_STATES,
    NEXT_STATE,
    CycleReport,
    DrainPolicy,
    NodeSnapshot,
    NodeStepResult,
    NodeUpgradeRecord,
    NodeUpgradeState,
)
from pod_delete import PodDeleteManager
from state_store import CORDON_MARKER_KEY, NodeUpgradeStateStore
from uncordon import UncordonManager
from version import DaemonSetVersionOracle

logger = logging.getLogger(__name__)

SKIP_LABEL = "upgrade.skip"
MAX_ERROR_LENGTH = 512


def pod_is_healthy(pod: Optional[Dict]) -> bool:
    """Running, Ready and not terminating."""
    if not pod:
        return False
    if pod.get("metadata", {}).get("deletionTimestamp"):
        return False
    status = pod.get("status", {})
    if status.get("phase") != "Running":
        return False
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions") or []
    )


def _pick_driver_pod(pods: List[Dict]) -> Dict:
    """Prefer a live pod over a terminating one, then the newest."""
    return sorted(
        pods,
        key=lambda p: (
            p.get("metadata", {}).get("deletionTimestamp") is None,
            p.get("metadata", {}).get("creationTimestamp") or "",
        ),
    )[-1]


class ClusterUpgradeStateManager:
    """Drives every managed node through the upgrade state machine."""

    def __init__(
        self,
        api,
        state_store: NodeUpgradeStateStore,
        drain_manager: DrainManager,
        pod_delete_manager: PodDeleteManager,
        uncordon_manager: UncordonManager,
        version_oracle,
        namespace: str,
        pod_selector: Optional[str] = None,
        node_selector: Optional[str] = None,
        max_parallel_upgrades: int = 1,
        backoff: Optional[BackoffPolicy] = None,
        drain_policy: Optional[DrainPolicy] = None,
        pod_delete_grace_period: Optional[int] = None,
        pod_ready_timeout: int = 600,
        cycle_timeout: float = 900,
        auto_upgrade: bool = True,
        dry_run: bool = False,
    ):
        """
        Initialize the coordinator.

        Args:
            api: KubeRestClient used for the cluster snapshot
            state_store: Node upgrade state persistence
            drain_manager: Cordon and drain engine
            pod_delete_manager: Driver pod delete engine
            uncordon_manager: Uncordon engine
            version_oracle: Reports running vs desired version per node
            namespace: Namespace of the driver pods
            pod_selector: Label selector matching the driver pods
            node_selector: Label selector restricting managed nodes
            max_parallel_upgrades: Nodes allowed past UpgradeRequired at once (0 = unlimited)
            backoff: Retry policy for failed steps
            drain_policy: How nodes are drained
            pod_delete_grace_period: Grace period for driver pod deletion
            pod_ready_timeout: Seconds to wait for the new driver pod before failing attempts
            cycle_timeout: Deadline for all per-node steps of one cycle (seconds)
            auto_upgrade: If False, only observe and report
            dry_run: If True, decide and log but never act or persist
        """
        self.api = api
        self.state_store = state_store
        self.drain_manager = drain_manager
        self.pod_delete_manager = pod_delete_manager
        self.uncordon_manager = uncordon_manager
        self.version_oracle = version_oracle
        self.namespace = namespace
        self.pod_selector = pod_selector
        self.node_selector = node_selector
        self.max_parallel_upgrades = max_parallel_upgrades
        self.backoff = backoff or BackoffPolicy()
        self.drain_policy = drain_policy or DrainPolicy()
        self.pod_delete_grace_period = pod_delete_grace_period
        self.pod_ready_timeout = pod_ready_timeout
        self.cycle_timeout = cycle_timeout
        self.auto_upgrade = auto_upgrade
        self.dry_run = dry_run

    @classmethod
    def from_config(cls, config, api) -> "ClusterUpgradeStateManager":
        """Wire the coordinator and its engines from an UpgraderConfig."""
        store = NodeUpgradeStateStore(api, key_prefix=config.key_prefix)
        return cls(
            api=api,
            state_store=store,
            drain_manager=DrainManager(api, key_prefix=config.key_prefix),
            pod_delete_manager=PodDeleteManager(api),
            uncordon_manager=UncordonManager(api, key_prefix=config.key_prefix),
            version_oracle=DaemonSetVersionOracle(
                api, config.namespace, config.daemonset_name
            ),
            namespace=config.namespace,
            pod_selector=config.pod_selector,
            node_selector=config.node_selector,
            max_parallel_upgrades=config.max_parallel_upgrades,
            backoff=config.backoff_policy(),
            drain_policy=config.drain_policy(),
            pod_delete_grace_period=config.pod_delete_grace_period,
            pod_ready_timeout=config.pod_ready_timeout,
            cycle_timeout=config.cycle_timeout,
            auto_upgrade=config.auto_upgrade,
            dry_run=config.dry_run,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def build_snapshot(self) -> "OrderedDict[str, NodeSnapshot]":
        """
        Build the per-cycle view of all managed nodes, ordered by node name.

        Raises:
            SnapshotError: The cluster could not be listed
        """
        try:
            nodes = self.api.list_nodes(self.node_selector)
            pods = self.api.list_pods(self.namespace, self.pod_selector)
        except UpgradeError as e:
            raise SnapshotError(f"Cannot list cluster state: {e}") from e

        pods_by_node: Dict[str, List[Dict]] = {}
        for pod in pods:
            node_name = pod.get("spec", {}).get("nodeName")
            if node_name:
                pods_by_node.setdefault(node_name, []).append(pod)
        driver_pods = {n: _pick_driver_pod(p) for n, p in pods_by_node.items()}

        try:
            versions = self.version_oracle.versions(driver_pods)
        except UpgradeError as e:
            raise SnapshotError(f"Cannot determine versions: {e}") from e

        skip_key = self.state_store.key(SKIP_LABEL)
        snapshot: "OrderedDict[str, NodeSnapshot]" = OrderedDict()
        for node in sorted(nodes, key=lambda n: n["metadata"]["name"]):
            name = node["metadata"]["name"]
            record = self.state_store.record_from_node(node)
            pod = driver_pods.get(name)
            if record.state is None and pod is None:
                continue
            labels = node["metadata"].get("labels") or {}
            snapshot[name] = NodeSnapshot(
                record=record,
                version=versions.get(name),
                driver_pod=pod,
                skip=labels.get(skip_key) == "true",
            )
        return snapshot

    def _observe(
        self, snap: NodeSnapshot, now: datetime
    ) -> Tuple[Optional[NodeUpgradeRecord], Optional[str]]:
        """
        Decide how a node enters or leaves tracking.

        Returns:
            (record to persist, action) where action is "detected", "dropped",
            "skipped" or None
        """
        record = snap.record
        up_to_date = snap.version is not None and snap.version.up_to_date
        # A cleared node can still carry our cordon; it must finish the rollout
        # to be uncordoned even if its driver is already current.
        cordoned_by_us = record.annotations.get(CORDON_MARKER_KEY) == "true"

        if record.state in (None, NodeUpgradeState.UP_TO_DATE):
            if snap.driver_pod is None or snap.version is None:
                return None, None
            if up_to_date and not cordoned_by_us:
                return None, None
            if snap.skip:
                return None, "skipped"
            if cordoned_by_us:
                logger.info(
                    f"{record.node_name}: still cordoned by a previous upgrade, re-admitting"
                )
            new = NodeUpgradeRecord(
                node_name=record.node_name,
                state=NodeUpgradeState.UPGRADE_REQUIRED,
                tracked_pod=pod_ref(snap.driver_pod),
                last_transition_time=now,
                annotations=dict(record.annotations),
            )
            return new, "detected"

        if record.state == NodeUpgradeState.UPGRADE_REQUIRED:
            if up_to_date and not cordoned_by_us:
                return None, "dropped"
            if snap.skip:
                return None, "skipped"

        return None, None

    def _step(
        self, snap: NodeSnapshot, now: datetime
    ) -> Tuple[NodeStepResult, Optional[NodeUpgradeRecord]]:
        """
        Attempt one forward step for an in-flight node.

        Never raises: failures are folded into the returned record.
        """
        record = replace(snap.record, annotations=dict(snap.record.annotations))
        name = record.node_name
        state = record.state
        start = time.monotonic()

        try:
            if state == NodeUpgradeState.CORDON_REQUIRED:
                self.drain_manager.cordon(name)

            elif state == NodeUpgradeState.POD_DELETION_REQUIRED:
                if snap.version is not None and snap.version.up_to_date:
                    logger.info(f"{name}: driver pod already at desired version, not restarting it")
                else:
                    if snap.driver_pod is not None:
                        record.tracked_pod = pod_ref(snap.driver_pod)
                    if record.tracked_pod is not None:
                        self.pod_delete_manager.delete_pod(
                            record.tracked_pod.namespace,
                            record.tracked_pod.name,
                            self.pod_delete_grace_period,
                        )

            elif state == NodeUpgradeState.DRAIN_REQUIRED:
                self.drain_manager.drain(name, self.drain_policy)

            elif state == NodeUpgradeState.WAIT_FOR_POD_READY:
                healthy = (
                    pod_is_healthy(snap.driver_pod)
                    and snap.version is not None
                    and snap.version.up_to_date
                )
                if not healthy:
                    since = record.last_transition_time or now
                    waited = (now - since).total_seconds()
                    if waited <= self.pod_ready_timeout:
                        logger.info(
                            f"{name}: waiting for new driver pod to become ready ({waited:.0f}s)"
                        )
                        return (
                            NodeStepResult(name, state, state, "pending"),
                            None,
                        )
                    raise StepTimeoutError(
                        f"driver pod not ready after {waited:.0f}s "
                        f"(timeout {self.pod_ready_timeout}s)"
                    )
                record.tracked_pod = pod_ref(snap.driver_pod)

            elif state == NodeUpgradeState.UNCORDON_REQUIRED:
                if not self.uncordon_manager.uncordon(name):
                    return (
                        NodeStepResult(
                            name,
                            state,
                            None,
                            "removed",
                            duration_seconds=time.monotonic() - start,
                        ),
                        None,
                    )

        except Exception as e:
            record.attempt_count += 1
            record.last_attempt_time = now
            record.last_error = str(e)[:MAX_ERROR_LENGTH]
            to_state = state
            if self.backoff.exhausted(record.attempt_count):
                to_state = NodeUpgradeState.FAILED
                record.state = to_state
                record.last_transition_time = now
                logger.error(
                    f"{name}: {state.value} failed {record.attempt_count} time(s), "
                    f"marking upgrade failed: {e}"
                )
            else:
                logger.warning(
                    f"{name}: {state.value} failed "
                    f"(attempt {record.attempt_count}/{self.backoff.max_attempts}): {e}"
                )
            return (
                NodeStepResult(
                    name,
                    state,
                    to_state,
                    "failed",
                    error_message=record.last_error,
                    duration_seconds=time.monotonic() - start,
                ),
                record,
            )

        record.state = NEXT_STATE[state]
        record.attempt_count = 0
        record.last_error = None
        record.last_attempt_time = None
        record.last_transition_time = now
        if record.state == NodeUpgradeState.UP_TO_DATE:
            record.tracked_pod = None
        logger.info(f"{name}: {state.value} -> {record.state.value}")
        return (
            NodeStepResult(
                name,
                state,
                record.state,
                "advanced",
                duration_seconds=time.monotonic() - start,
            ),
            record,
        )

    def _run_steps(
        self, snaps: List[NodeSnapshot], now: datetime
    ) -> Tuple[List[NodeStepResult], Dict[str, NodeUpgradeRecord]]:
        """Run one step per node concurrently, bounded by the cycle deadline."""
        results: List[NodeStepResult] = []
        updates: Dict[str, NodeUpgradeRecord] = {}
        if not snaps:
            return results, updates

        # Nodes already in flight when the budget was lowered queue for a worker.
        workers = min(len(snaps), self.max_parallel_upgrades or len(snaps))
        executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="node-upgrade"
        )
        futures = {
            executor.submit(self._step, snap, now): snap.record.node_name
            for snap in snaps
        }
        done, not_done = wait(futures, timeout=self.cycle_timeout)
        # Abandoned steps finish on their own; their outcome is discarded.
        executor.shutdown(wait=False, cancel_futures=True)

        for future in done:
            result, record = future.result()
            results.append(result)
            if record is not None:
                updates[result.node_name] = record

        for future in not_done:
            name = futures[future]
            state = next(s.record.state for s in snaps if s.record.node_name == name)
            logger.warning(
                f"{name}: {state.value} still running at the cycle deadline, "
                "will retry next cycle"
            )
            results.append(
                NodeStepResult(
                    name,
                    state,
                    state,
                    "abandoned",
                    error_message=f"cycle deadline of {self.cycle_timeout}s exceeded",
                )
            )
        return results, updates

    def run_cycle(self) -> CycleReport:
        """
        Run one full cycle: snapshot, admit, step, persist.

        Raises:
            SnapshotError: The snapshot could not be built; nothing was changed
        """
        report = CycleReport(start_time=time.time())
        now = self._now()
        snapshot = self.build_snapshot()
        stored = {name: snap.record.state for name, snap in snapshot.items()}

        states: Dict[str, Optional[NodeUpgradeState]] = {}
        updates: Dict[str, NodeUpgradeRecord] = {}
        clears: List[str] = []

        for name, snap in snapshot.items():
            new, action = self._observe(snap, now)
            states[name] = snap.record.state
            if action == "skipped":
                report.skipped_nodes.append(name)
                if snap.record.state is None:
                    continue
            if action == "dropped":
                logger.info(f"{name}: already at desired version, no longer tracked")
                clears.append(name)
                states[name] = NodeUpgradeState.UP_TO_DATE
                snap.record = NodeUpgradeRecord(node_name=name)
                continue
            if new is not None:
                logger.info(
                    f"{name}: upgrade required "
                    f"({snap.version.current} -> {snap.version.desired})"
                )
                snap.record = new
                updates[name] = new
                states[name] = new.state
                report.results.append(
                    NodeStepResult(name, None, new.state, "detected")
                )
            elif snap.record.state is None:
                states[name] = NodeUpgradeState.UP_TO_DATE

        in_progress = [
            snap
            for snap in snapshot.values()
            if snap.record.state in IN_PROGRESS_STATES
        ]

        if not self.auto_upgrade:
            # Detections are reported, never stored: observing makes no transitions.
            logger.info("Automatic upgrade disabled, not changing any node")
            return self._finish(report, states, snapshot, updates)

        # Admission: lexicographic by node name, bounded by the parallel budget.
        if self.max_parallel_upgrades > 0:
            budget = max(0, self.max_parallel_upgrades - len(in_progress))
        else:
            budget = len(snapshot)
        candidates = [
            name
            for name, snap in snapshot.items()
            if snap.record.state == NodeUpgradeState.UPGRADE_REQUIRED
            and name not in report.skipped_nodes
        ]
        admitted = candidates[:budget]
        if candidates:
            logger.info(
                f"{len(in_progress)} node(s) in progress, admitting {len(admitted)} "
                f"of {len(candidates)} waiting (max parallel: "
                f"{self.max_parallel_upgrades or 'unlimited'})"
            )
        for name in admitted:
            snap = snapshot[name]
            record = replace(snap.record, annotations=dict(snap.record.annotations))
            record.state = NodeUpgradeState.CORDON_REQUIRED
            record.attempt_count = 0
            record.last_error = None
            record.last_attempt_time = None
            record.last_transition_time = now
            if snap.driver_pod is not None:
                record.tracked_pod = pod_ref(snap.driver_pod)
            if self.dry_run:
                logger.info(f"DRY RUN: Would admit {name} into the upgrade")
                report.results.append(
                    NodeStepResult(name, snap.record.state, record.state, "dry_run")
                )
                continue
            updates[name] = record
            states[name] = record.state
            report.results.append(
                NodeStepResult(name, snap.record.state, record.state, "advanced")
            )

        due = []
        for snap in in_progress:
            if not self.backoff.ready(snap.record, now):
                logger.debug(
                    f"{snap.record.node_name}: backing off after "
                    f"{snap.record.attempt_count} failed attempt(s)"
                )
                report.results.append(
                    NodeStepResult(
                        snap.record.node_name,
                        snap.record.state,
                        snap.record.state,
                        "pending",
                        error_message=snap.record.last_error,
                    )
                )
                continue
            if self.dry_run:
                logger.info(
                    f"DRY RUN: Would run {snap.record.state.value} on {snap.record.node_name}"
                )
                report.results.append(
                    NodeStepResult(
                        snap.record.node_name,
                        snap.record.state,
                        snap.record.state,
                        "dry_run",
                    )
                )
                continue
            due.append(snap)

        step_results, step_updates = self._run_steps(due, now)
        report.results.extend(step_results)
        for result in step_results:
            if result.status == "removed":
                states.pop(result.node_name, None)
        for name, record in step_updates.items():
            if record.state == NodeUpgradeState.UP_TO_DATE:
                clears.append(name)
                states[name] = record.state
            else:
                updates[name] = record
                states[name] = record.state

        if not self.dry_run:
            self._persist(updates, clears, states, report, stored)
        return self._finish(report, states, snapshot, updates)

    def _persist(
        self,
        updates: Dict[str, NodeUpgradeRecord],
        clears: List[str],
        states: Dict[str, Optional[NodeUpgradeState]],
        report: CycleReport,
        stored: Dict[str, Optional[NodeUpgradeState]],
    ) -> None:
        """Write back every changed record; a failed write leaves the old state."""
        for name, record in updates.items():
            try:
                self.state_store.set(name, record)
            except UpgradeError as e:
                logger.error(f"{name}: failed to persist upgrade state: {e}")
                self._revert(name, states, report, stored.get(name), e)
        for name in clears:
            try:
                self.state_store.clear(name)
            except UpgradeError as e:
                logger.error(f"{name}: failed to clear upgrade state: {e}")
                self._revert(name, states, report, stored.get(name), e)

    @staticmethod
    def _revert(name, states, report, previous, error) -> None:
        states[name] = previous
        for result in report.results:
            if result.node_name == name and result.status in ("advanced", "detected", "failed"):
                result.status = "failed"
                result.to_state = previous
                result.error_message = f"persist failed: {error}"

    def _finish(
        self,
        report: CycleReport,
        states: Dict[str, Optional[NodeUpgradeState]],
        snapshot: Dict[str, NodeSnapshot],
        updates: Optional[Dict[str, NodeUpgradeRecord]] = None,
    ) -> CycleReport:
        counts: Dict[str, int] = {}
        for name, state in states.items():
            if state is None:
                continue
            counts[state.value] = counts.get(state.value, 0) + 1
            if state == NodeUpgradeState.FAILED:
                record = (updates or {}).get(name) or snapshot[name].record
                report.failed_nodes[name] = record.last_error or "unknown error"
        report.state_counts = counts
        report.end_time = time.time()
        return report
