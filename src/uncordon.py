"""
Uncordon engine: return a node to service once its new driver pod is healthy.
"""

import logging

from errors import ApiError, ConflictError, NotFoundError, UncordonError
from state_store import CORDON_MARKER_KEY, DEFAULT_KEY_PREFIX

logger = logging.getLogger(__name__)


class UncordonManager:
    """Clears the unschedulable mark set by the drain engine."""

    def __init__(
        self, api, key_prefix: str = DEFAULT_KEY_PREFIX, conflict_retries: int = 5
    ):
        self.api = api
        self.key_prefix = key_prefix
        self.conflict_retries = conflict_retries

    @property
    def marker_key(self) -> str:
        return f"{self.key_prefix}/{CORDON_MARKER_KEY}"

    def uncordon(self, node_name: str) -> bool:
        """
        Mark a node schedulable again.

        Only cordons placed by the upgrader (carrying the marker annotation)
        are lifted; a cordon that predates the upgrade is preserved.

        Returns:
            True on success (including a no-op), False if the node is gone

        Raises:
            UncordonError: The write failed or kept conflicting
        """
        for attempt in range(self.conflict_retries + 1):
            try:
                node = self.api.get_node(node_name)
            except NotFoundError:
                logger.warning(f"{node_name}: node no longer exists")
                return False
            except ApiError as e:
                raise UncordonError(f"{node_name}: cannot read node: {e}") from e

            metadata = node.get("metadata", {})
            annotations = metadata.get("annotations") or {}
            if annotations.get(self.marker_key) != "true":
                if node.get("spec", {}).get("unschedulable"):
                    logger.info(
                        f"{node_name}: cordon predates the upgrade, leaving node cordoned"
                    )
                return True

            patch = {
                "metadata": {
                    "resourceVersion": metadata.get("resourceVersion"),
                    "annotations": {self.marker_key: None},
                },
                "spec": {"unschedulable": None},
            }
            try:
                self.api.patch_node(node_name, patch)
            except ConflictError:
                logger.debug(
                    f"{node_name}: conflict while uncordoning, re-reading "
                    f"(attempt {attempt + 1}/{self.conflict_retries + 1})"
                )
                continue
            except NotFoundError:
                logger.warning(f"{node_name}: node deleted while uncordoning")
                return False
            except ApiError as e:
                raise UncordonError(f"{node_name}: uncordon failed: {e}") from e

            logger.info(f"{node_name}: uncordoned")
            return True

        raise UncordonError(f"{node_name}: uncordon kept conflicting")
