"""
Node upgrade state persistence.

Upgrade state lives on the node object itself (a label for the state, and
annotations for the rest) so it survives orchestrator restarts and is
visible to anyone inspecting the node.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from errors import ApiError, ConflictError, NotFoundError, StoreError
from models import NodeUpgradeRecord, NodeUpgradeState, PodRef

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "fleet-upgrade.io"

STATE_KEY = "upgrade-state"
ATTEMPTS_KEY = "upgrade-attempts"
LAST_TRANSITION_KEY = "upgrade-last-transition"
LAST_ATTEMPT_KEY = "upgrade-last-attempt"
LAST_ERROR_KEY = "upgrade-last-error"
TRACKED_POD_KEY = "upgrade-tracked-pod"
# Written together with the cordon by the drain engine, removed by uncordon.
CORDON_MARKER_KEY = "cordoned-by-upgrade"

RESERVED_KEYS = (
    STATE_KEY,
    ATTEMPTS_KEY,
    LAST_TRANSITION_KEY,
    LAST_ATTEMPT_KEY,
    LAST_ERROR_KEY,
    TRACKED_POD_KEY,
)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        logger.warning(f"Ignoring malformed timestamp {value!r}")
        return None


class NodeUpgradeStateStore:
    """Reads and writes NodeUpgradeRecords on node objects."""

    def __init__(
        self, api, key_prefix: str = DEFAULT_KEY_PREFIX, conflict_retries: int = 5
    ):
        """
        Args:
            api: KubeRestClient (or compatible)
            key_prefix: Label/annotation key prefix
            conflict_retries: Re-read attempts after a resourceVersion conflict
        """
        self.api = api
        self.key_prefix = key_prefix
        self.conflict_retries = conflict_retries

    def key(self, name: str) -> str:
        return f"{self.key_prefix}/{name}"

    def record_from_node(self, node: Dict) -> NodeUpgradeRecord:
        """Decode the upgrade record carried by a node object."""
        metadata = node.get("metadata", {})
        name = metadata.get("name", "")
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}

        state = None
        raw_state = labels.get(self.key(STATE_KEY))
        if raw_state:
            try:
                state = NodeUpgradeState(raw_state)
            except ValueError:
                logger.warning(f"{name}: unknown upgrade state {raw_state!r}, ignoring")

        try:
            attempts = int(annotations.get(self.key(ATTEMPTS_KEY), "0"))
        except ValueError:
            attempts = 0

        prefix = f"{self.key_prefix}/"
        reserved = {self.key(k) for k in RESERVED_KEYS}
        extra = {
            k[len(prefix):]: v
            for k, v in annotations.items()
            if k.startswith(prefix) and k not in reserved
        }

        return NodeUpgradeRecord(
            node_name=name,
            state=state,
            tracked_pod=PodRef.parse(annotations.get(self.key(TRACKED_POD_KEY))),
            attempt_count=attempts,
            last_transition_time=parse_time(
                annotations.get(self.key(LAST_TRANSITION_KEY))
            ),
            last_attempt_time=parse_time(annotations.get(self.key(LAST_ATTEMPT_KEY))),
            last_error=annotations.get(self.key(LAST_ERROR_KEY)),
            annotations=extra,
        )

    def get(self, node_name: str) -> NodeUpgradeRecord:
        """
        Return the stored record for a node.

        A node without stored state, or a node that no longer exists, yields
        a default record with state None.
        """
        try:
            node = self.api.get_node(node_name)
        except NotFoundError:
            return NodeUpgradeRecord(node_name=node_name)
        except ApiError as e:
            raise StoreError(f"{node_name}: cannot read upgrade state: {e}") from e
        return self.record_from_node(node)

    def _record_patch(self, record: NodeUpgradeRecord) -> Dict:
        labels = {
            self.key(STATE_KEY): record.state.value if record.state else None
        }
        annotations = {
            self.key(ATTEMPTS_KEY): str(record.attempt_count),
            self.key(LAST_TRANSITION_KEY): format_time(record.last_transition_time),
            self.key(LAST_ATTEMPT_KEY): format_time(record.last_attempt_time),
            self.key(LAST_ERROR_KEY): record.last_error,
            self.key(TRACKED_POD_KEY): (
                str(record.tracked_pod) if record.tracked_pod else None
            ),
        }
        for k, v in record.annotations.items():
            if k != CORDON_MARKER_KEY:
                annotations[self.key(k)] = v
        return {"metadata": {"labels": labels, "annotations": annotations}}

    def _clear_patch(self, node: Dict) -> Dict:
        metadata = node.get("metadata", {})
        prefix = f"{self.key_prefix}/"
        keep = {self.key(CORDON_MARKER_KEY)}
        annotations = {
            k: None
            for k in (metadata.get("annotations") or {})
            if k.startswith(prefix) and k not in keep
        }
        return {
            "metadata": {
                "labels": {self.key(STATE_KEY): None},
                "annotations": annotations,
            }
        }

    def _patch_with_retry(self, node_name: str, build_patch) -> None:
        """Read-modify-write guarded by resourceVersion."""
        for attempt in range(self.conflict_retries + 1):
            try:
                node = self.api.get_node(node_name)
            except NotFoundError as e:
                raise ConflictError(f"{node_name}: node was deleted", 404) from e
            except ApiError as e:
                raise StoreError(f"{node_name}: cannot read node: {e}") from e

            patch = build_patch(node)
            patch["metadata"]["resourceVersion"] = node["metadata"].get(
                "resourceVersion"
            )
            try:
                self.api.patch_node(node_name, patch)
                return
            except ConflictError:
                logger.debug(
                    f"{node_name}: conflict writing upgrade state, re-reading "
                    f"(attempt {attempt + 1}/{self.conflict_retries + 1})"
                )
                continue
            except NotFoundError as e:
                raise ConflictError(f"{node_name}: node was deleted", 404) from e
            except ApiError as e:
                raise StoreError(f"{node_name}: cannot write upgrade state: {e}") from e

        raise ConflictError(
            f"{node_name}: upgrade state write kept conflicting after "
            f"{self.conflict_retries + 1} attempts"
        )

    def set(self, node_name: str, record: NodeUpgradeRecord) -> None:
        """
        Persist a record on its node.

        Raises:
            ConflictError: Node deleted, or conflicts persisted past the retry budget
            StoreError: Any other failure
        """
        self._patch_with_retry(node_name, lambda node: self._record_patch(record))
        logger.debug(
            f"{node_name}: stored state={record.state.value if record.state else None} "
            f"attempts={record.attempt_count}"
        )

    def clear(self, node_name: str) -> None:
        """
        Remove all stored upgrade state from a node.

        This is the operator recovery action for Failed nodes: the next cycle
        re-evaluates the node from scratch.
        """
        self._patch_with_retry(node_name, self._clear_patch)
        logger.info(f"{node_name}: upgrade state cleared")
