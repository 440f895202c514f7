"""
Drain engine: cordon a node and evict its workloads.

Evictions go through the Eviction sub-resource so the API server enforces
each workload's disruption budget. A refused eviction (HTTP 429) is retried
until the drain timeout instead of failing the drain outright.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from errors import (
    ApiError,
    ConflictError,
    DrainError,
    NotFoundError,
    TooManyRequestsError,
)
from models import DrainPolicy, DrainResult, PodRef
from state_store import CORDON_MARKER_KEY, DEFAULT_KEY_PREFIX

logger = logging.getLogger(__name__)

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
TOLERANT_LABEL = "upgrade-tolerant"


def selector_matches(selector: Optional[str], labels: Dict[str, str]) -> bool:
    """
    Evaluate an equality-based label selector ("a=b,c!=d,e,!f").

    An empty selector matches everything.
    """
    if not selector:
        return True
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "!=" in term:
            k, v = (s.strip() for s in term.split("!=", 1))
            if labels.get(k) == v:
                return False
        elif "=" in term:
            k, v = (s.strip() for s in term.split("=", 1))
            if labels.get(k.rstrip("=")) != v.lstrip("="):
                return False
        elif term.startswith("!"):
            if term[1:].strip() in labels:
                return False
        elif term not in labels:
            return False
    return True


def pod_ref(pod: Dict) -> PodRef:
    metadata = pod.get("metadata", {})
    return PodRef(namespace=metadata.get("namespace", ""), name=metadata.get("name", ""))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


class DrainManager:
    """Cordons nodes and evicts their non-exempt pods."""

    def __init__(
        self, api, key_prefix: str = DEFAULT_KEY_PREFIX, conflict_retries: int = 5
    ):
        self.api = api
        self.key_prefix = key_prefix
        self.conflict_retries = conflict_retries

    @property
    def marker_key(self) -> str:
        return f"{self.key_prefix}/{CORDON_MARKER_KEY}"

    def cordon(self, node_name: str) -> bool:
        """
        Mark a node unschedulable.

        The cordon and its marker annotation are written in one patch
        guarded by resourceVersion. A node that is already unschedulable is
        left untouched.

        Returns:
            True if the cordon belongs to the upgrader, False if the node was
            already cordoned by someone else

        Raises:
            NotFoundError: Node does not exist
            ConflictError: Node kept changing under us
        """
        for attempt in range(self.conflict_retries + 1):
            node = self.api.get_node(node_name)
            metadata = node.get("metadata", {})
            annotations = metadata.get("annotations") or {}
            ours = annotations.get(self.marker_key) == "true"

            if node.get("spec", {}).get("unschedulable"):
                if not ours:
                    logger.info(f"{node_name}: already cordoned before upgrade")
                return ours

            patch = {
                "metadata": {
                    "resourceVersion": metadata.get("resourceVersion"),
                    "annotations": {self.marker_key: "true"},
                },
                "spec": {"unschedulable": True},
            }
            try:
                self.api.patch_node(node_name, patch)
            except ConflictError:
                logger.debug(
                    f"{node_name}: conflict while cordoning, re-reading "
                    f"(attempt {attempt + 1}/{self.conflict_retries + 1})"
                )
                continue
            logger.info(f"{node_name}: cordoned")
            return True

        raise ConflictError(f"{node_name}: cordon kept conflicting")

    def _is_skipped(self, pod: Dict, policy: DrainPolicy) -> Optional[str]:
        """Return the reason a pod is exempt from eviction, or None."""
        metadata = pod.get("metadata", {})
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}

        if any(
            ref.get("kind") == "DaemonSet"
            for ref in metadata.get("ownerReferences") or []
        ):
            return "daemonset"
        if MIRROR_POD_ANNOTATION in annotations:
            return "mirror pod"
        if labels.get(f"{self.key_prefix}/{TOLERANT_LABEL}") == "true":
            return "upgrade tolerant"
        if not selector_matches(policy.pod_selector, labels):
            return "not selected"
        for predicate in policy.skip_predicates:
            if predicate(pod):
                return "skip predicate"
        return None

    def _classify(
        self, pods: List[Dict], policy: DrainPolicy
    ) -> Tuple[List[Dict], List[str]]:
        """Split pods into evictable ones and skipped refs; refuse blocked pods."""
        evictable: List[Dict] = []
        skipped: List[str] = []
        local_storage: List[str] = []
        unmanaged: List[str] = []

        for pod in pods:
            ref = str(pod_ref(pod))
            reason = self._is_skipped(pod, policy)
            if reason:
                logger.debug(f"Skipping {ref}: {reason}")
                skipped.append(ref)
                continue

            volumes = pod.get("spec", {}).get("volumes") or []
            if not policy.delete_empty_dir and any("emptyDir" in v for v in volumes):
                local_storage.append(ref)
            controllers = [
                r
                for r in pod.get("metadata", {}).get("ownerReferences") or []
                if r.get("controller")
            ]
            if not policy.force and not controllers:
                unmanaged.append(ref)
            evictable.append(pod)

        if local_storage:
            raise DrainError(DrainError.LOCAL_STORAGE, local_storage)
        if unmanaged:
            raise DrainError(DrainError.UNMANAGED, unmanaged)
        return evictable, skipped

    def _gone(self, ref: PodRef, uid: Optional[str]) -> Tuple[bool, Optional[Dict]]:
        try:
            pod = self.api.get_pod(ref.namespace, ref.name)
        except NotFoundError:
            return True, None
        if uid and pod.get("metadata", {}).get("uid") != uid:
            return True, None
        return False, pod

    def _past_deadline(self, pod: Dict) -> bool:
        deletion = _parse_timestamp(pod.get("metadata", {}).get("deletionTimestamp"))
        return deletion is not None and datetime.now(timezone.utc) > deletion

    def drain(self, node_name: str, policy: DrainPolicy) -> DrainResult:
        """
        Cordon a node and evict every non-exempt pod from it.

        Calling drain again on a cordoned, already empty node succeeds
        without doing anything.

        Args:
            node_name: Node to drain
            policy: Drain settings

        Returns:
            DrainResult

        Raises:
            DrainError: Pods blocked, API failure, or timeout; the node stays cordoned
        """
        deadline = time.monotonic() + policy.timeout_seconds
        self.cordon(node_name)

        result = DrainResult(node_name=node_name)
        if not policy.enable:
            logger.info(f"{node_name}: drain disabled, not evicting pods")
            return result

        try:
            pods = self.api.list_pods_on_node(node_name)
        except ApiError as e:
            raise DrainError(DrainError.API, []) from e

        evictable, result.skipped = self._classify(pods, policy)
        if not evictable:
            logger.info(f"{node_name}: nothing to evict")
            return result

        logger.info(f"{node_name}: evicting {len(evictable)} pod(s)")

        pending: Dict[PodRef, Optional[str]] = {}
        terminating: Dict[PodRef, Optional[str]] = {}
        for pod in evictable:
            uid = pod.get("metadata", {}).get("uid")
            if pod.get("metadata", {}).get("deletionTimestamp"):
                terminating[pod_ref(pod)] = uid
            else:
                pending[pod_ref(pod)] = uid

        while True:
            for ref, uid in list(pending.items()):
                try:
                    self.api.evict_pod(ref.namespace, ref.name)
                except TooManyRequestsError:
                    logger.debug(f"{node_name}: eviction of {ref} refused by disruption budget")
                    continue
                except NotFoundError:
                    pass
                except ApiError as e:
                    logger.error(f"{node_name}: eviction of {ref} failed: {e}")
                    raise DrainError(
                        DrainError.API,
                        [str(r) for r in list(pending) + list(terminating)],
                    ) from e
                del pending[ref]
                terminating[ref] = uid

            for ref, uid in list(terminating.items()):
                try:
                    gone, pod = self._gone(ref, uid)
                except ApiError as e:
                    logger.warning(f"{node_name}: cannot check {ref}: {e}")
                    continue
                if gone:
                    del terminating[ref]
                    result.evicted.append(str(ref))
                    continue
                if policy.force and self._past_deadline(pod):
                    logger.warning(f"{node_name}: force deleting {ref} past its grace period")
                    try:
                        self.api.delete_pod(ref.namespace, ref.name, 0, uid)
                    except NotFoundError:
                        pass
                    except ApiError as e:
                        logger.warning(f"{node_name}: force delete of {ref} failed: {e}")
                        continue
                    del terminating[ref]
                    result.force_deleted.append(str(ref))

            if not pending and not terminating:
                break

            if time.monotonic() >= deadline:
                remaining = [str(r) for r in list(pending) + list(terminating)]
                logger.error(
                    f"{node_name}: drain timed out after {policy.timeout_seconds}s, "
                    f"{len(remaining)} pod(s) remaining"
                )
                raise DrainError(DrainError.TIMEOUT, remaining)

            time.sleep(policy.eviction_retry_interval)

        logger.info(
            f"{node_name}: drained ({len(result.evicted)} evicted, "
            f"{len(result.force_deleted)} force deleted, {len(result.skipped)} skipped)"
        )
        return result
