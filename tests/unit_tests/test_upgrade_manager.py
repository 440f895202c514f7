"""
Unit tests for the cluster upgrade coordinator.

These run the real engines against the in-memory fake cluster.
"""

import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from backoff import BackoffPolicy
from drain import DrainManager
from errors import ApiError, SnapshotError
from fake_cluster import (
    DRIVER_DAEMONSET,
    DRIVER_NAMESPACE,
    FakeKubeClient,
    StaticVersionOracle,
    make_node,
    make_pod,
)
from models import (
    IN_PROGRESS_STATES,
    NEXT_STATE,
    DrainPolicy,
    NodeUpgradeRecord,
    NodeUpgradeState,
)
from pod_delete import PodDeleteManager
from state_store import CORDON_MARKER_KEY, NodeUpgradeStateStore
from uncordon import UncordonManager
from upgrade_manager import ClusterUpgradeStateManager, pod_is_healthy
from version import DaemonSetVersionOracle


def build_cluster(node_names, workloads=True, node_labels=None):
    """Nodes running driver generation 1 while the DaemonSet is at generation 2."""
    api = FakeKubeClient()
    api.add_daemonset(generation=2)
    for name in node_names:
        api.add_node(make_node(name, labels=(node_labels or {}).get(name)))
        api.add_driver_pod(name, generation=1)
        if workloads:
            api.add_pod(make_pod("apps", f"web-{name}", name))
    return api


def build_manager(api, **kwargs):
    options = dict(
        max_parallel_upgrades=1,
        backoff=BackoffPolicy(max_attempts=3, base_delay=0),
        drain_policy=DrainPolicy(timeout_seconds=5, eviction_retry_interval=0),
        pod_ready_timeout=600,
        cycle_timeout=30,
    )
    options.update(kwargs)
    return ClusterUpgradeStateManager(
        api=api,
        state_store=options.pop("state_store", NodeUpgradeStateStore(api)),
        drain_manager=options.pop("drain_manager", DrainManager(api)),
        pod_delete_manager=options.pop("pod_delete_manager", PodDeleteManager(api)),
        uncordon_manager=options.pop("uncordon_manager", UncordonManager(api)),
        version_oracle=options.pop(
            "version_oracle",
            DaemonSetVersionOracle(api, DRIVER_NAMESPACE, DRIVER_DAEMONSET),
        ),
        namespace=DRIVER_NAMESPACE,
        pod_selector="app=mofed",
        **options,
    )


def run_until(manager, node_name, state, max_cycles=20):
    for _ in range(max_cycles):
        manager.run_cycle()
        if manager.state_store.get(node_name).state == state:
            return
    raise AssertionError(f"{node_name} never reached {state}")


class TestAdmission(unittest.TestCase):
    """Admission control and the parallelism budget."""

    def test_ten_nodes_three_admitted(self):
        """Test only max_parallel_upgrades nodes are admitted in one cycle."""
        names = [f"node-{i:02d}" for i in range(10)]
        api = build_cluster(names)
        manager = build_manager(api, max_parallel_upgrades=3)

        report = manager.run_cycle()

        self.assertEqual(
            report.state_counts, {"cordon-required": 3, "upgrade-required": 7}
        )
        admitted = sorted(
            n
            for n in names
            if manager.state_store.get(n).state == NodeUpgradeState.CORDON_REQUIRED
        )
        self.assertEqual(admitted, names[:3])
        for name in names[3:]:
            self.assertEqual(
                manager.state_store.get(name).state, NodeUpgradeState.UPGRADE_REQUIRED
            )

    def test_admission_waits_for_budget(self):
        """Test no new node is admitted while the budget is used up."""
        api = build_cluster(["node-a", "node-b"])
        manager = build_manager(api, max_parallel_upgrades=1)

        manager.run_cycle()
        report = manager.run_cycle()

        self.assertEqual(
            manager.state_store.get("node-b").state, NodeUpgradeState.UPGRADE_REQUIRED
        )
        self.assertEqual(report.state_counts.get("upgrade-required"), 1)

    def test_unlimited_parallelism(self):
        """Test max_parallel_upgrades=0 admits every waiting node."""
        names = ["node-a", "node-b", "node-c", "node-d"]
        api = build_cluster(names)
        manager = build_manager(api, max_parallel_upgrades=0)

        report = manager.run_cycle()

        self.assertEqual(report.state_counts, {"cordon-required": 4})

    def test_skip_label_prevents_admission(self):
        """Test nodes labelled to be skipped are reported but not touched."""
        api = build_cluster(
            ["node-a", "node-b"],
            node_labels={"node-b": {"fleet-upgrade.io/upgrade.skip": "true"}},
        )
        manager = build_manager(api, max_parallel_upgrades=2)

        report = manager.run_cycle()

        self.assertEqual(report.skipped_nodes, ["node-b"])
        self.assertIsNone(manager.state_store.get("node-b").state)
        self.assertEqual(
            manager.state_store.get("node-a").state, NodeUpgradeState.CORDON_REQUIRED
        )

    def test_up_to_date_nodes_are_not_tracked(self):
        """Test a node already at the desired version gets no record."""
        api = FakeKubeClient()
        api.add_daemonset(generation=2)
        api.add_node(make_node("node-a"))
        api.add_driver_pod("node-a", generation=2)
        manager = build_manager(api)

        report = manager.run_cycle()

        self.assertEqual(report.state_counts, {"upgrade-done": 1})
        self.assertTrue(report.stable)
        self.assertIsNone(manager.state_store.get("node-a").state)

    def test_waiting_node_dropped_when_already_upgraded(self):
        """Test a waiting node that reached the desired version is untracked."""
        api = build_cluster(["node-a", "node-b"])
        manager = build_manager(api, max_parallel_upgrades=1)
        manager.run_cycle()

        old = api.driver_pod("node-b")
        del api.pods[(DRIVER_NAMESPACE, old["metadata"]["name"])]
        api.add_driver_pod("node-b", generation=2)

        report = manager.run_cycle()

        self.assertIsNone(manager.state_store.get("node-b").state)
        self.assertEqual(report.state_counts.get("upgrade-done"), 1)

    def test_auto_upgrade_disabled_only_observes(self):
        """Test no node is admitted when automatic upgrade is off."""
        api = build_cluster(["node-a"])
        manager = build_manager(api, auto_upgrade=False)

        report = manager.run_cycle()

        self.assertEqual(report.state_counts, {"upgrade-required": 1})
        self.assertEqual([r.status for r in report.results], ["detected"])
        self.assertFalse(api.get_node("node-a")["spec"].get("unschedulable"))
        self.assertIsNone(manager.state_store.get("node-a").state)
        self.assertNotIn("patch_node", [c[0] for c in api.calls])


class TestRollout(unittest.TestCase):
    """End-to-end rollouts through the state machine."""

    def test_full_rollout_follows_state_edges(self):
        """Test every node walks the state table edge by edge to completion."""
        names = ["node-a", "node-b", "node-c", "node-d", "node-e"]
        api = build_cluster(names)
        manager = build_manager(api, max_parallel_upgrades=2)

        for _ in range(60):
            report = manager.run_cycle()
            for result in report.results:
                if result.status == "advanced":
                    self.assertEqual(result.to_state, NEXT_STATE[result.from_state])
                if result.status == "detected":
                    self.assertEqual(result.to_state, NodeUpgradeState.UPGRADE_REQUIRED)
            busy = sum(report.state_counts.get(s.value, 0) for s in IN_PROGRESS_STATES)
            self.assertLessEqual(busy, 2)
            if report.state_counts.get("upgrade-done") == len(names):
                break
        else:
            self.fail("rollout did not finish")

        self.assertTrue(report.stable)
        for name in names:
            node = api.get_node(name)
            self.assertFalse(node["spec"].get("unschedulable"))
            self.assertNotIn(
                "fleet-upgrade.io/upgrade-state", node["metadata"]["labels"]
            )
            self.assertEqual(
                api.driver_pod(name)["metadata"]["labels"]["pod-template-generation"],
                "2",
            )
            self.assertNotIn(("apps", f"web-{name}"), api.pods)

    def test_one_step_per_cycle(self):
        """Test an admitted node moves exactly one state per cycle."""
        api = build_cluster(["node-a"])
        manager = build_manager(api)
        expected = [
            NodeUpgradeState.CORDON_REQUIRED,
            NodeUpgradeState.POD_DELETION_REQUIRED,
            NodeUpgradeState.DRAIN_REQUIRED,
            NodeUpgradeState.WAIT_FOR_POD_READY,
            NodeUpgradeState.UNCORDON_REQUIRED,
            None,
        ]

        seen = []
        for _ in expected:
            manager.run_cycle()
            seen.append(manager.state_store.get("node-a").state)

        self.assertEqual(seen, expected)

    def test_tracked_pod_set_and_cleared(self):
        """Test the tracked pod follows the driver pod and is cleared at the end."""
        api = build_cluster(["node-a"])
        manager = build_manager(api)

        manager.run_cycle()
        record = manager.state_store.get("node-a")
        self.assertEqual(str(record.tracked_pod), f"{DRIVER_NAMESPACE}/mofed-node-a-g1")

        run_until(manager, "node-a", NodeUpgradeState.UNCORDON_REQUIRED)
        record = manager.state_store.get("node-a")
        self.assertEqual(str(record.tracked_pod), f"{DRIVER_NAMESPACE}/mofed-node-a-g2")

        manager.run_cycle()
        self.assertIsNone(manager.state_store.get("node-a").tracked_pod)

    def test_uncordon_waits_for_ready_pod(self):
        """Test a node never reaches UncordonRequired while its new pod is not ready."""
        api = build_cluster(["node-a"])
        api.recreated_pods_ready = False
        manager = build_manager(api)

        run_until(manager, "node-a", NodeUpgradeState.WAIT_FOR_POD_READY)
        for _ in range(3):
            report = manager.run_cycle()
            self.assertEqual(
                manager.state_store.get("node-a").state,
                NodeUpgradeState.WAIT_FOR_POD_READY,
            )
            self.assertEqual(report.results[0].status, "pending")
        self.assertTrue(api.get_node("node-a")["spec"]["unschedulable"])

        pod = api.driver_pod("node-a")
        api.set_pod_ready(DRIVER_NAMESPACE, pod["metadata"]["name"])
        manager.run_cycle()

        self.assertEqual(
            manager.state_store.get("node-a").state, NodeUpgradeState.UNCORDON_REQUIRED
        )

    def test_pod_ready_timeout_counts_as_failed_attempt(self):
        """Test waiting past pod_ready_timeout is counted as a failed attempt."""
        api = build_cluster(["node-a"])
        api.recreated_pods_ready = False
        manager = build_manager(api, pod_ready_timeout=60)
        run_until(manager, "node-a", NodeUpgradeState.WAIT_FOR_POD_READY)

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        with patch.object(manager, "_now", return_value=later):
            report = manager.run_cycle()

        record = manager.state_store.get("node-a")
        self.assertEqual(record.state, NodeUpgradeState.WAIT_FOR_POD_READY)
        self.assertEqual(record.attempt_count, 1)
        self.assertIn("not ready", record.last_error)
        self.assertEqual(report.results[0].status, "failed")

    def test_waits_for_oracle_desired_version(self):
        """Test a ready pod is not enough until the oracle reports the new version."""
        api = build_cluster(["node-a"])
        oracle = StaticVersionOracle(desired="v2", current={"node-a": "v1"})
        manager = build_manager(api, version_oracle=oracle)

        run_until(manager, "node-a", NodeUpgradeState.WAIT_FOR_POD_READY)
        report = manager.run_cycle()
        self.assertEqual(report.results[0].status, "pending")

        oracle.set_current(["node-a"], "v2")
        manager.run_cycle()

        self.assertEqual(
            manager.state_store.get("node-a").state, NodeUpgradeState.UNCORDON_REQUIRED
        )


class TestFailureHandling(unittest.TestCase):
    """Retry budget, Failed state and recovery."""

    def setUp(self):
        self.api = build_cluster(["node-a", "node-b"])
        self.api.failures[("delete_pod", f"{DRIVER_NAMESPACE}/mofed-node-a-g1")] = (
            ApiError("internal error", 500)
        )
        self.manager = build_manager(self.api, max_parallel_upgrades=2)

    def test_node_fails_after_max_attempts(self):
        """Test repeated step failures end in Failed with the last error kept."""
        run_until(self.manager, "node-a", NodeUpgradeState.FAILED)

        record = self.manager.state_store.get("node-a")
        self.assertEqual(record.attempt_count, 3)
        self.assertIn("Failed to delete pod", record.last_error)

        report = self.manager.run_cycle()
        self.assertIn("node-a", report.failed_nodes)
        self.assertIn("Failed to delete pod", report.failed_nodes["node-a"])

    def test_failed_node_stays_failed_and_cordoned(self):
        """Test a failed node is not retried and not returned to service."""
        run_until(self.manager, "node-a", NodeUpgradeState.FAILED)
        calls_before = len(self.api.calls)

        for _ in range(3):
            self.manager.run_cycle()

        self.assertEqual(
            self.manager.state_store.get("node-a").state, NodeUpgradeState.FAILED
        )
        self.assertTrue(self.api.get_node("node-a")["spec"]["unschedulable"])
        delete_calls = [
            c for c in self.api.calls[calls_before:] if c[0] == "delete_pod"
        ]
        self.assertNotIn(
            ("delete_pod", f"{DRIVER_NAMESPACE}/mofed-node-a-g1"), delete_calls
        )

    def test_failure_is_isolated_to_its_node(self):
        """Test a failing node does not hold back the other node's rollout."""
        for _ in range(20):
            self.manager.run_cycle()

        self.assertEqual(
            self.manager.state_store.get("node-a").state, NodeUpgradeState.FAILED
        )
        self.assertIsNone(self.manager.state_store.get("node-b").state)
        self.assertFalse(self.api.get_node("node-b")["spec"].get("unschedulable"))

    def test_clearing_failed_node_readmits_it(self):
        """Test clearing a failed record puts the node back to UpgradeRequired."""
        run_until(self.manager, "node-a", NodeUpgradeState.FAILED)
        self.api.failures.clear()

        self.manager.state_store.clear("node-a")
        report = self.manager.run_cycle()

        detected = [
            r for r in report.results if r.node_name == "node-a" and r.status == "detected"
        ]
        self.assertEqual(len(detected), 1)
        self.assertEqual(detected[0].to_state, NodeUpgradeState.UPGRADE_REQUIRED)

        run_until(self.manager, "node-a", None)
        self.assertFalse(self.api.get_node("node-a")["spec"].get("unschedulable"))

    def assert_uncordoned(self, api, manager, name):
        node = api.get_node(name)
        self.assertFalse(node["spec"].get("unschedulable"))
        self.assertNotIn(
            manager.state_store.key(CORDON_MARKER_KEY), node["metadata"]["annotations"]
        )

    def test_clearing_node_failed_waiting_for_pod(self):
        """Test a node cleared after its new pod came up late is still uncordoned."""
        api = build_cluster(["node-a"])
        api.recreated_pods_ready = False
        manager = build_manager(api, pod_ready_timeout=0)
        run_until(manager, "node-a", NodeUpgradeState.FAILED)
        self.assertIn("not ready", manager.state_store.get("node-a").last_error)

        pod = api.driver_pod("node-a")
        api.set_pod_ready(DRIVER_NAMESPACE, pod["metadata"]["name"])
        manager.state_store.clear("node-a")
        calls_before = len(api.calls)
        report = manager.run_cycle()

        statuses = [r.status for r in report.results if r.node_name == "node-a"]
        self.assertIn("detected", statuses)
        run_until(manager, "node-a", None)

        self.assert_uncordoned(api, manager, "node-a")
        self.assertEqual(
            api.driver_pod("node-a")["metadata"]["name"], pod["metadata"]["name"]
        )
        self.assertNotIn(
            ("delete_pod", f"{DRIVER_NAMESPACE}/{pod['metadata']['name']}"),
            api.calls[calls_before:],
        )

    def test_clearing_node_failed_during_drain(self):
        """Test a node cleared after a failed drain finishes and is uncordoned."""
        api = build_cluster(["node-a"])
        api.eviction_refusals[("apps", "web-node-a")] = -1
        manager = build_manager(
            api, drain_policy=DrainPolicy(timeout_seconds=0, eviction_retry_interval=0)
        )
        run_until(manager, "node-a", NodeUpgradeState.FAILED)
        self.assertTrue(api.get_node("node-a")["spec"]["unschedulable"])

        api.eviction_refusals.clear()
        manager.state_store.clear("node-a")
        run_until(manager, "node-a", None)

        self.assert_uncordoned(api, manager, "node-a")
        self.assertNotIn(("apps", "web-node-a"), api.pods)

    def test_backoff_delays_retry(self):
        """Test a failed step is not retried before its backoff delay elapses."""
        manager = build_manager(
            self.api,
            max_parallel_upgrades=2,
            backoff=BackoffPolicy(max_attempts=3, base_delay=3600),
        )
        run_until(manager, "node-a", NodeUpgradeState.POD_DELETION_REQUIRED)
        manager.run_cycle()
        self.assertEqual(manager.state_store.get("node-a").attempt_count, 1)

        report = manager.run_cycle()

        self.assertEqual(manager.state_store.get("node-a").attempt_count, 1)
        statuses = [r.status for r in report.results if r.node_name == "node-a"]
        self.assertEqual(statuses, ["pending"])


class TestCycleBoundaries(unittest.TestCase):
    """Snapshot errors, deadlines and dry runs."""

    def test_snapshot_error_aborts_cycle(self):
        """Test losing the node listing aborts the cycle without writes."""
        api = build_cluster(["node-a"])
        api.failures[("list_nodes", "")] = ApiError("connection refused")
        manager = build_manager(api)

        with self.assertRaises(SnapshotError):
            manager.run_cycle()

        self.assertNotIn("patch_node", [c[0] for c in api.calls])

    def test_slow_step_is_abandoned_at_deadline(self):
        """Test a step still running at the deadline leaves its node unchanged."""
        api = build_cluster(["node-a", "node-b"])
        real_drain = DrainManager(api)
        drain_manager = MagicMock()

        def slow_cordon(name):
            if name == "node-a":
                time.sleep(1.0)
            return real_drain.cordon(name)

        drain_manager.cordon.side_effect = slow_cordon
        manager = build_manager(
            api,
            max_parallel_upgrades=2,
            cycle_timeout=0.2,
            drain_manager=drain_manager,
        )
        manager.run_cycle()

        report = manager.run_cycle()

        statuses = {r.node_name: r.status for r in report.results}
        self.assertEqual(statuses["node-a"], "abandoned")
        self.assertEqual(statuses["node-b"], "advanced")
        self.assertEqual(
            manager.state_store.get("node-a").state, NodeUpgradeState.CORDON_REQUIRED
        )
        self.assertEqual(
            manager.state_store.get("node-b").state,
            NodeUpgradeState.POD_DELETION_REQUIRED,
        )

    def test_lowered_budget_caps_concurrent_steps(self):
        """Test nodes admitted under a larger budget step one at a time after it shrinks."""
        api = build_cluster(["node-a", "node-b"])
        real_drain = DrainManager(api)
        drain_manager = MagicMock()
        lock = threading.Lock()
        running = [0]
        peak = [0]

        def tracked_cordon(name):
            with lock:
                running[0] += 1
                peak[0] = max(peak[0], running[0])
            time.sleep(0.05)
            with lock:
                running[0] -= 1
            return real_drain.cordon(name)

        drain_manager.cordon.side_effect = tracked_cordon
        manager = build_manager(api, max_parallel_upgrades=2, drain_manager=drain_manager)
        manager.run_cycle()
        manager.max_parallel_upgrades = 1

        report = manager.run_cycle()

        self.assertEqual(peak[0], 1)
        self.assertEqual([r.status for r in report.results], ["advanced", "advanced"])
        for name in ("node-a", "node-b"):
            self.assertEqual(
                manager.state_store.get(name).state,
                NodeUpgradeState.POD_DELETION_REQUIRED,
            )

    def test_dry_run_changes_nothing(self):
        """Test dry run reports decisions without writing to the cluster."""
        api = build_cluster(["node-a", "node-b"])
        manager = build_manager(api, max_parallel_upgrades=2, dry_run=True)

        report = manager.run_cycle()

        self.assertNotIn("patch_node", [c[0] for c in api.calls])
        self.assertIn("dry_run", [r.status for r in report.results])
        self.assertIsNone(manager.state_store.get("node-a").state)

    def test_persist_failure_keeps_previous_state(self):
        """Test a failed state write reports the node at its old state."""
        api = build_cluster(["node-a"])
        store = MagicMock(wraps=NodeUpgradeStateStore(api))
        store.set.side_effect = ApiError("etcd unavailable", 500)
        manager = build_manager(api, state_store=store)

        report = manager.run_cycle()

        self.assertEqual(report.state_counts, {})
        self.assertEqual(report.results[0].status, "failed")
        self.assertIn("persist failed", report.results[0].error_message)


class TestPodHealth(unittest.TestCase):
    """Test driver pod readiness evaluation."""

    def test_ready_pod_is_healthy(self):
        pod = make_pod("ns", "p", "node-a", ready=True)
        self.assertTrue(pod_is_healthy(pod))

    def test_unready_or_terminating_pod_is_not_healthy(self):
        self.assertFalse(pod_is_healthy(make_pod("ns", "p", "node-a", ready=False)))
        terminating = make_pod("ns", "p", "node-a")
        terminating["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        self.assertFalse(pod_is_healthy(terminating))
        self.assertFalse(pod_is_healthy(None))


if __name__ == "__main__":
    unittest.main()
