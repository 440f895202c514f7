"""Console entry point for the node driver upgrade orchestrator CLI."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List

from clients import KubeRestClient
from config import UpgraderConfig
from log_utils import setup_logging
from reconciler import UpgradeReconciler
from state_store import DEFAULT_KEY_PREFIX, NodeUpgradeStateStore
from upgrade_manager import ClusterUpgradeStateManager

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Node driver upgrade orchestrator\n\n"
            "Rolls a new driver DaemonSet version across cluster nodes in bounded\n"
            "batches: cordon, restart the driver pod, drain, wait for the new pod,\n"
            "uncordon."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Single dry-run cycle\n"
            "  python3 main.py --namespace nvidia-network-operator --daemonset mofed-ubuntu22.04 --once --dry-run\n\n"
            "  # Run the controller, two nodes at a time\n"
            "  python3 main.py --namespace nvidia-network-operator --daemonset mofed-ubuntu22.04 --max-parallel 2\n\n"
            "  # Re-admit a failed node\n"
            "  python3 main.py --namespace nvidia-network-operator --daemonset mofed-ubuntu22.04 --clear-node worker-3"
        ),
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument(
        "--namespace", required=True, help="Namespace of the driver DaemonSet"
    )
    required.add_argument(
        "--daemonset", required=True, help="Name of the driver DaemonSet"
    )

    cluster = parser.add_argument_group("cluster access")
    cluster.add_argument(
        "--api-server",
        metavar="URL",
        help="API server URL (default: in-cluster service address)",
    )
    cluster.add_argument("--token-file", help="File holding a bearer token")
    cluster.add_argument("--ca-cert", help="CA bundle for the API server")
    cluster.add_argument(
        "--pod-selector", help="Label selector matching the driver pods"
    )
    cluster.add_argument(
        "--node-selector", help="Label selector restricting the managed nodes"
    )
    cluster.add_argument(
        "--key-prefix",
        default=DEFAULT_KEY_PREFIX,
        help=f"Label/annotation prefix for upgrade state (default: {DEFAULT_KEY_PREFIX})",
    )

    mode = parser.add_argument_group("operation mode")
    mode.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    mode.add_argument(
        "--status", action="store_true", help="Print every node's upgrade state and exit"
    )
    mode.add_argument(
        "--clear-node",
        metavar="NODE",
        help="Clear a node's stored upgrade state (re-admits a failed node) and exit",
    )
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Decide and log transitions without changing anything",
    )
    mode.add_argument(
        "--no-auto-upgrade",
        action="store_true",
        help="Observe and report only; never move nodes",
    )

    safety = parser.add_argument_group("safety and control")
    safety.add_argument(
        "--max-parallel",
        type=int,
        default=1,
        metavar="N",
        help="Maximum nodes upgrading at once, 0 = unlimited (default: 1)",
    )
    safety.add_argument(
        "--max-attempts",
        type=int,
        default=5,
        metavar="N",
        help="Failed attempts of one step before a node is marked failed (default: 5)",
    )
    safety.add_argument(
        "--backoff-delay",
        type=float,
        default=30.0,
        metavar="SECONDS",
        help="Delay before retrying a failed step (default: 30)",
    )
    safety.add_argument(
        "--backoff-max-delay",
        type=float,
        default=600.0,
        metavar="SECONDS",
        help="Upper bound of the retry delay (default: 600)",
    )
    safety.add_argument(
        "--fixed-backoff",
        action="store_true",
        help="Retry at a constant delay instead of doubling it",
    )

    drain = parser.add_argument_group("drain")
    drain.add_argument(
        "--no-drain", action="store_true", help="Cordon only, do not evict pods"
    )
    drain.add_argument(
        "--drain-timeout",
        type=int,
        default=300,
        metavar="SECONDS",
        help="Time allowed for evicting a node's pods (default: 300)",
    )
    drain.add_argument(
        "--force",
        action="store_true",
        help="Evict pods without a controller and force delete pods stuck terminating",
    )
    drain.add_argument(
        "--delete-emptydir-data",
        action="store_true",
        help="Evict pods using emptyDir volumes",
    )
    drain.add_argument(
        "--drain-pod-selector", help="Only evict pods matching this label selector"
    )
    drain.add_argument(
        "--grace-period",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Grace period for deleting the driver pod (default: pod setting)",
    )

    timeouts = parser.add_argument_group("timeouts")
    timeouts.add_argument(
        "--pod-ready-timeout",
        type=int,
        default=600,
        metavar="SECONDS",
        help="Time allowed for the new driver pod to become ready (default: 600)",
    )
    timeouts.add_argument(
        "--cycle-timeout",
        type=int,
        default=900,
        metavar="SECONDS",
        help="Deadline for all node steps of one cycle (default: 900)",
    )
    timeouts.add_argument(
        "--requeue-short",
        type=float,
        default=10.0,
        metavar="SECONDS",
        help="Delay between cycles while nodes are upgrading (default: 10)",
    )
    timeouts.add_argument(
        "--interval",
        type=float,
        default=300.0,
        metavar="SECONDS",
        help="Delay between cycles once the cluster is stable (default: 300)",
    )

    logging_group = parser.add_argument_group("logging and output")
    logging_group.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )
    logging_group.add_argument(
        "--log-file",
        default="node-upgrade.log",
        help="Log file path (default: node-upgrade.log)",
    )
    logging_group.add_argument(
        "--report-file", help="Write each cycle report to this JSON file"
    )
    return parser


def show_status(api, store: NodeUpgradeStateStore, node_selector=None) -> None:
    """Log the stored upgrade state of every node."""
    nodes = api.list_nodes(node_selector)
    logger.info(f"{'Node':<30} {'State':<25} {'Attempts':<9} {'Last error'}")
    logger.info("-" * 90)
    for node in sorted(nodes, key=lambda n: n["metadata"]["name"]):
        record = store.record_from_node(node)
        state = record.state.value if record.state else "-"
        error = record.last_error or ""
        logger.info(
            f"{record.node_name:<30} {state:<25} {record.attempt_count:<9} {error[:60]}"
        )


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)
    config = UpgraderConfig.from_args(args)
    api = KubeRestClient.from_config(config)
    store = NodeUpgradeStateStore(api, key_prefix=config.key_prefix)

    if args.clear_node:
        store.clear(args.clear_node)
        return 0

    if args.status:
        show_status(api, store, config.node_selector)
        return 0

    manager = ClusterUpgradeStateManager.from_config(config, api)
    reconciler = UpgradeReconciler(
        manager,
        api=api,
        requeue_short=config.requeue_short,
        requeue_long=config.requeue_long,
        report_file=config.report_file,
    )

    if args.once:
        report = reconciler.reconcile()
        return 1 if report.error_message or report.failed_nodes else 0

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping after the current cycle")
        reconciler.stop(stop_event)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    reconciler.run_forever(stop_event)
    return 0
