"""
Reconcile driver: runs coordinator cycles on a timer and on cluster changes.
"""

import logging
import threading
import time
from typing import List, Optional

from errors import SnapshotError
from models import CycleReport
from report import export_report_json, print_report

logger = logging.getLogger(__name__)


class UpgradeReconciler:
    """Runs one coordinator cycle at a time and reports its outcome."""

    def __init__(
        self,
        state_manager,
        api=None,
        requeue_short: float = 10.0,
        requeue_long: float = 300.0,
        report_file: Optional[str] = None,
        debounce: float = 1.0,
        watch_timeout: int = 300,
        watch_retry_delay: float = 5.0,
    ):
        """
        Args:
            state_manager: ClusterUpgradeStateManager
            api: KubeRestClient used for change watches (None = timer only)
            requeue_short: Delay before the next cycle while nodes are mid-upgrade
            requeue_long: Delay before the next cycle once the cluster is stable
            report_file: Optional path the last cycle report is written to as JSON
            debounce: Minimum pause after a change-triggered wake-up
            watch_timeout: Server-side timeout of one watch request (seconds)
            watch_retry_delay: Pause before re-opening a failed watch (seconds)
        """
        self.state_manager = state_manager
        self.api = api
        self.requeue_short = requeue_short
        self.requeue_long = requeue_long
        self.report_file = report_file
        self.debounce = debounce
        self.watch_timeout = watch_timeout
        self.watch_retry_delay = watch_retry_delay

        self._cycle_lock = threading.Lock()
        self._trigger = threading.Event()

    def trigger(self) -> None:
        """Request a cycle as soon as possible; repeated requests coalesce."""
        self._trigger.set()

    def reconcile(self) -> Optional[CycleReport]:
        """
        Run exactly one coordinator cycle.

        Returns:
            The cycle report, or None if a cycle was already in flight (the
            request is then folded into a single follow-up cycle)
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Cycle already in flight, coalescing trigger")
            self._trigger.set()
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        start = time.time()
        try:
            report = self.state_manager.run_cycle()
        except SnapshotError as e:
            logger.error(f"Upgrade cycle aborted: {e}")
            report = CycleReport(
                start_time=start, end_time=time.time(), error_message=str(e)
            )

        report.requeue_after = self.requeue_long if report.stable else self.requeue_short
        print_report(report)
        if self.report_file:
            try:
                export_report_json(report, self.report_file)
            except OSError as e:
                logger.warning(f"Could not write report to {self.report_file}: {e}")
        return report

    def _watch_loop(self, path: str, params: dict, stop_event: threading.Event) -> None:
        # Reconnects resume from the last seen version instead of replaying
        # every object as ADDED.
        resource_version = None
        while not stop_event.is_set():
            watch_params = dict(params)
            if resource_version:
                watch_params["resourceVersion"] = resource_version
            try:
                for event in self.api.watch(
                    path, watch_params, timeout_seconds=self.watch_timeout
                ):
                    if stop_event.is_set():
                        return
                    if event.get("type") == "ERROR":
                        # Usually 410 Gone: the resume point expired.
                        logger.debug(f"Watch on {path} returned error event: {event}")
                        resource_version = None
                        break
                    obj = event.get("object") or {}
                    resource_version = (
                        obj.get("metadata", {}).get("resourceVersion") or resource_version
                    )
                    if event.get("type") == "MODIFIED" and self.api.is_own_write(obj):
                        continue
                    self.trigger()
            except Exception as e:
                logger.warning(
                    f"Watch on {path} failed: {e}, reconnecting in {self.watch_retry_delay}s"
                )
            stop_event.wait(self.watch_retry_delay)

    def start_watches(self, stop_event: threading.Event) -> List[threading.Thread]:
        """Start background watches on nodes and driver pods."""
        if self.api is None:
            return []
        manager = self.state_manager
        watches = [
            ("api/v1/nodes", {"labelSelector": manager.node_selector}),
            (
                f"api/v1/namespaces/{manager.namespace}/pods",
                {"labelSelector": manager.pod_selector},
            ),
        ]
        threads = []
        for path, params in watches:
            thread = threading.Thread(
                target=self._watch_loop,
                args=(path, params, stop_event),
                name=f"watch-{path.rsplit('/', 1)[-1]}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Run cycles until stop_event is set."""
        stop_event = stop_event or threading.Event()
        self.start_watches(stop_event)
        logger.info("Upgrade reconciler started")

        while not stop_event.is_set():
            self._trigger.clear()
            report = self.reconcile()
            delay = report.requeue_after if report else self.requeue_short

            woke = self._trigger.wait(delay)
            if woke and not stop_event.is_set():
                logger.debug("Cluster change observed, running next cycle early")
                stop_event.wait(self.debounce)

        logger.info("Upgrade reconciler stopped")

    def stop(self, stop_event: threading.Event) -> None:
        """Stop a running run_forever loop promptly."""
        stop_event.set()
        self._trigger.set()
