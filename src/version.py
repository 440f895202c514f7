"""
Desired-version oracles.

The coordinator only asks "what runs on this node, and what should run";
how that is answered is up to the oracle.
"""

import logging
from typing import Dict

from models import NodeVersion

logger = logging.getLogger(__name__)

POD_TEMPLATE_GENERATION_LABEL = "pod-template-generation"


class VersionOracle:
    """Interface: report running vs desired version per node."""

    def versions(self, driver_pods: Dict[str, Dict]) -> Dict[str, NodeVersion]:
        """
        Args:
            driver_pods: Node name -> driver pod currently on that node

        Returns:
            Node name -> NodeVersion, for every node in driver_pods
        """
        raise NotImplementedError


class DaemonSetVersionOracle(VersionOracle):
    """
    Compares each driver pod's template generation with its DaemonSet's.

    A DaemonSet bumps metadata.generation on every template change and
    labels the pods it creates with the generation they were built from.
    """

    def __init__(self, api, namespace: str, daemonset_name: str):
        self.api = api
        self.namespace = namespace
        self.daemonset_name = daemonset_name

    def versions(self, driver_pods: Dict[str, Dict]) -> Dict[str, NodeVersion]:
        ds = self.api.get_daemonset(self.namespace, self.daemonset_name)
        desired = str(ds.get("metadata", {}).get("generation", ""))
        result = {}
        for node_name, pod in driver_pods.items():
            labels = pod.get("metadata", {}).get("labels") or {}
            current = labels.get(POD_TEMPLATE_GENERATION_LABEL)
            result[node_name] = NodeVersion(current=current, desired=desired or None)
        return result
