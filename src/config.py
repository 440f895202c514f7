"""
Configuration management for the node upgrade orchestrator.
"""

from dataclasses import dataclass
from typing import Optional

from backoff import BackoffPolicy
from models import DrainPolicy
from state_store import DEFAULT_KEY_PREFIX


@dataclass
class UpgraderConfig:
    """Configuration for cluster upgrade operations."""

    namespace: str
    daemonset_name: str
    api_server: Optional[str] = None
    token_file: Optional[str] = None
    ca_cert: Optional[str] = None
    pod_selector: Optional[str] = None
    node_selector: Optional[str] = None
    key_prefix: str = DEFAULT_KEY_PREFIX
    max_parallel_upgrades: int = 1
    max_attempts: int = 5
    backoff_base_delay: float = 30.0
    backoff_max_delay: float = 600.0
    backoff_exponential: bool = True
    drain_enable: bool = True
    drain_timeout: int = 300
    drain_force: bool = False
    drain_delete_empty_dir: bool = False
    drain_pod_selector: Optional[str] = None
    pod_delete_grace_period: Optional[int] = None
    pod_ready_timeout: int = 600
    cycle_timeout: int = 900
    requeue_short: float = 10.0
    requeue_long: float = 300.0
    auto_upgrade: bool = True
    dry_run: bool = False
    verbose: bool = False
    report_file: Optional[str] = None

    def drain_policy(self) -> DrainPolicy:
        return DrainPolicy(
            enable=self.drain_enable,
            timeout_seconds=self.drain_timeout,
            force=self.drain_force,
            delete_empty_dir=self.drain_delete_empty_dir,
            pod_selector=self.drain_pod_selector,
        )

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_delay,
            max_delay=self.backoff_max_delay,
            exponential=self.backoff_exponential,
        )

    @classmethod
    def from_args(cls, args) -> "UpgraderConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            UpgraderConfig instance
        """
        return cls(
            namespace=args.namespace,
            daemonset_name=args.daemonset,
            api_server=args.api_server,
            token_file=args.token_file,
            ca_cert=args.ca_cert,
            pod_selector=args.pod_selector,
            node_selector=args.node_selector,
            key_prefix=args.key_prefix,
            max_parallel_upgrades=args.max_parallel,
            max_attempts=args.max_attempts,
            backoff_base_delay=args.backoff_delay,
            backoff_max_delay=args.backoff_max_delay,
            backoff_exponential=not args.fixed_backoff,
            drain_enable=not args.no_drain,
            drain_timeout=args.drain_timeout,
            drain_force=args.force,
            drain_delete_empty_dir=args.delete_emptydir_data,
            drain_pod_selector=args.drain_pod_selector,
            pod_delete_grace_period=args.grace_period,
            pod_ready_timeout=args.pod_ready_timeout,
            cycle_timeout=args.cycle_timeout,
            requeue_short=args.requeue_short,
            requeue_long=args.interval,
            auto_upgrade=not args.no_auto_upgrade,
            dry_run=args.dry_run,
            verbose=args.verbose,
            report_file=args.report_file,
        )
