"""
REST API client for the Kubernetes node and pod resources used by the upgrader.
"""

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession

from errors import (
    ApiError,
    ConflictError,
    NotFoundError,
    TooManyRequestsError,
)

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
IN_CLUSTER_TOKEN_FILE = os.path.join(SERVICE_ACCOUNT_DIR, "token")
IN_CLUSTER_CA_FILE = os.path.join(SERVICE_ACCOUNT_DIR, "ca.crt")

MERGE_PATCH = "application/merge-patch+json"
# resourceVersions produced by our own writes, kept for watch filtering
OWN_WRITE_HISTORY = 1024


def in_cluster_api_server() -> Optional[str]:
    """API server URL from the in-cluster service environment, if present."""
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


class KubeRestClient:
    """REST client for the Kubernetes core and apps APIs."""

    RETRYABLE_STATUS_CODES = {500, 502, 503, 504}

    def __init__(
        self,
        api_server: str,
        token: Optional[str] = None,
        token_file: Optional[str] = None,
        ca_cert: Optional[str] = None,
        timeout_s: int = 30,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        """
        Initialize the cluster REST client.

        Args:
            api_server: API server base URL (https://host:port)
            token: Bearer token; takes precedence over token_file
            token_file: File holding a bearer token (e.g. service account token)
            ca_cert: CA bundle used to verify the API server certificate
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            max_delay: Upper bound for a single backoff delay
        """
        self.api_server = api_server.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

        if token is None and token_file and os.path.exists(token_file):
            with open(token_file) as f:
                token = f.read().strip()

        if token:
            self.session = requests.Session()
            self.session.headers["Authorization"] = f"Bearer {token}"
        else:
            # GKE control planes accept Google OAuth access tokens.
            creds, _ = google.auth.default(
                scopes=["https://www.googleapis.com/auth/cloud-platform"]
            )
            self.session = AuthorizedSession(creds)

        if ca_cert:
            self.session.verify = ca_cert

        self._own_writes: "OrderedDict[str, None]" = OrderedDict()
        self._own_writes_lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "KubeRestClient":
        """Build a client from an UpgraderConfig, falling back to in-cluster settings."""
        api_server = config.api_server or in_cluster_api_server()
        if not api_server:
            raise ValueError(
                "No API server given and not running inside a cluster "
                "(set --api-server)"
            )
        token_file = config.token_file or IN_CLUSTER_TOKEN_FILE
        ca_cert = config.ca_cert
        if ca_cert is None and os.path.exists(IN_CLUSTER_CA_FILE):
            ca_cert = IN_CLUSTER_CA_FILE
        return cls(api_server=api_server, token_file=token_file, ca_cert=ca_cert)

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.api_server}/{path.lstrip('/')}"

    def _request_with_retry(self, method: str, url: str, **kwargs):
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Only server-side errors and connection failures are retried here.
        Conflicts and throttled evictions are returned to the caller, which
        owns the read-modify-write or disruption-budget retry.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            requests.Response

        Raises:
            ApiError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.RequestException as e:
                last_error = str(e)
                if attempt == self.max_retries:
                    break
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                last_error = f"HTTP {resp.status_code}: {self._error_message(resp)}"
                if attempt == self.max_retries:
                    break
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                time.sleep(delay)
                continue

            return resp

        raise ApiError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, self.max_delay)

    @staticmethod
    def _error_message(resp) -> str:
        try:
            return resp.json().get("message", "") or resp.text[:200]
        except ValueError:
            return resp.text[:200]

    def _check(self, resp, what: str, ok=(200,)) -> None:
        """Raise the typed error matching a non-success response."""
        if resp.status_code in ok:
            return
        message = f"{what} failed ({resp.status_code}): {self._error_message(resp)}"
        if resp.status_code == 404:
            raise NotFoundError(message, 404)
        if resp.status_code == 409:
            raise ConflictError(message, 409)
        if resp.status_code == 429:
            raise TooManyRequestsError(message, 429)
        raise ApiError(message, resp.status_code)

    def _list(self, path: str, params: Dict, what: str) -> List[Dict]:
        """Collect all items of a paginated list call."""
        items: List[Dict] = []
        params = {k: v for k, v in params.items() if v}
        while True:
            resp = self._request_with_retry("GET", self._url(path), params=params)
            self._check(resp, what)
            data = resp.json()
            items.extend(data.get("items", []))
            token = data.get("metadata", {}).get("continue")
            if not token:
                break
            params = {**params, "continue": token}
        return items

    def _remember_write(self, obj: Dict) -> None:
        version = obj.get("metadata", {}).get("resourceVersion")
        if not version:
            return
        with self._own_writes_lock:
            self._own_writes[version] = None
            while len(self._own_writes) > OWN_WRITE_HISTORY:
                self._own_writes.popitem(last=False)

    def is_own_write(self, obj: Dict) -> bool:
        """True if obj is the version produced by one of this client's patches."""
        version = obj.get("metadata", {}).get("resourceVersion")
        with self._own_writes_lock:
            return bool(version) and version in self._own_writes

    def list_nodes(self, label_selector: Optional[str] = None) -> List[Dict]:
        """List nodes, optionally filtered by a label selector."""
        return self._list(
            "api/v1/nodes", {"labelSelector": label_selector}, "List nodes"
        )

    def get_node(self, name: str) -> Dict:
        """Get a node by name."""
        resp = self._request_with_retry("GET", self._url(f"api/v1/nodes/{name}"))
        self._check(resp, f"Get node {name}")
        return resp.json()

    def patch_node(self, name: str, patch: Dict) -> Dict:
        """
        Apply a JSON merge patch to a node.

        Include metadata.resourceVersion in the patch to make the write
        conditional; a stale version is rejected with ConflictError.
        """
        resp = self._request_with_retry(
            "PATCH",
            self._url(f"api/v1/nodes/{name}"),
            data=json.dumps(patch),
            headers={"Content-Type": MERGE_PATCH},
        )
        self._check(resp, f"Patch node {name}")
        node = resp.json()
        self._remember_write(node)
        return node

    def list_pods(
        self,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> List[Dict]:
        """List pods in a namespace (or all namespaces)."""
        path = f"api/v1/namespaces/{namespace}/pods" if namespace else "api/v1/pods"
        return self._list(
            path,
            {"labelSelector": label_selector, "fieldSelector": field_selector},
            "List pods",
        )

    def list_pods_on_node(self, node_name: str) -> List[Dict]:
        """List all pods scheduled on a node."""
        return self.list_pods(field_selector=f"spec.nodeName={node_name}")

    def get_pod(self, namespace: str, name: str) -> Dict:
        """Get a pod."""
        resp = self._request_with_retry(
            "GET", self._url(f"api/v1/namespaces/{namespace}/pods/{name}")
        )
        self._check(resp, f"Get pod {namespace}/{name}")
        return resp.json()

    def delete_pod(
        self,
        namespace: str,
        name: str,
        grace_period_seconds: Optional[int] = None,
        uid: Optional[str] = None,
    ) -> None:
        """Delete a pod, optionally only if its UID still matches."""
        body: Dict = {"kind": "DeleteOptions", "apiVersion": "v1"}
        if grace_period_seconds is not None:
            body["gracePeriodSeconds"] = grace_period_seconds
        if uid:
            body["preconditions"] = {"uid": uid}
        resp = self._request_with_retry(
            "DELETE",
            self._url(f"api/v1/namespaces/{namespace}/pods/{name}"),
            json=body,
        )
        self._check(resp, f"Delete pod {namespace}/{name}", ok=(200, 202))

    def evict_pod(
        self, namespace: str, name: str, grace_period_seconds: Optional[int] = None
    ) -> None:
        """
        Request eviction of a pod through the policy/v1 Eviction sub-resource.

        Raises:
            TooManyRequestsError: Eviction refused by a disruption budget
            NotFoundError: Pod already gone
        """
        body: Dict = {
            "apiVersion": "policy/v1",
            "kind": "Eviction",
            "metadata": {"name": name, "namespace": namespace},
        }
        if grace_period_seconds is not None:
            body["deleteOptions"] = {"gracePeriodSeconds": grace_period_seconds}
        resp = self._request_with_retry(
            "POST",
            self._url(f"api/v1/namespaces/{namespace}/pods/{name}/eviction"),
            json=body,
        )
        self._check(resp, f"Evict pod {namespace}/{name}", ok=(200, 201))

    def get_daemonset(self, namespace: str, name: str) -> Dict:
        """Get a DaemonSet."""
        resp = self._request_with_retry(
            "GET", self._url(f"apis/apps/v1/namespaces/{namespace}/daemonsets/{name}")
        )
        self._check(resp, f"Get daemonset {namespace}/{name}")
        return resp.json()

    def watch(
        self, path: str, params: Optional[Dict] = None, timeout_seconds: int = 300
    ) -> Iterator[Dict]:
        """
        Stream watch events for a collection.

        Yields decoded events ({"type": ..., "object": ...}) until the server
        closes the stream. Errors are raised to the caller, which reconnects.
        """
        params = {k: v for k, v in (params or {}).items() if v}
        params["watch"] = "true"
        params["timeoutSeconds"] = str(timeout_seconds)
        resp = self.session.get(
            self._url(path),
            params=params,
            stream=True,
            timeout=(self.timeout_s, timeout_seconds + self.timeout_s),
        )
        try:
            self._check(resp, f"Watch {path}")
            for line in resp.iter_lines():
                if not line:
                    continue
                yield json.loads(line)
        finally:
            resp.close()
