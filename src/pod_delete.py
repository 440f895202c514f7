"""
Pod delete engine: remove a node's driver pod so its controller recreates it
with the new version.
"""

import logging
from typing import Optional

from errors import ApiError, DeleteError, NotFoundError

logger = logging.getLogger(__name__)


class PodDeleteManager:
    """Deletes a single tracked pod."""

    def __init__(self, api):
        self.api = api

    def delete_pod(
        self, namespace: str, name: str, grace_period: Optional[int] = None
    ) -> bool:
        """
        Delete a pod.

        Args:
            namespace: Pod namespace
            name: Pod name
            grace_period: Termination grace period in seconds (None = pod default)

        Returns:
            True if the pod was deleted, False if it was already gone

        Raises:
            DeleteError: Deletion failed
        """
        try:
            self.api.delete_pod(namespace, name, grace_period)
        except NotFoundError:
            logger.info(f"Pod {namespace}/{name} already gone")
            return False
        except ApiError as e:
            raise DeleteError(f"Failed to delete pod {namespace}/{name}: {e}") from e
        logger.info(f"Deleted pod {namespace}/{name}")
        return True
