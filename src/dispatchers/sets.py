"""Dispatcher sets and the Kubernetes membership source behind them.

A dispatcher set is one numbered group of SIP backends in kamailio's
dispatcher list. Each set is backed by the Endpoints object of a Kubernetes
Service: the addresses of its ready pods, combined with the SIP port
configured for the set, make up the membership.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import socket
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
import yaml

from .errors import SourceConstructionError, StreamClosed, WatchError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
DEFAULT_PORT = "5060"

# =============================================================================
# Set Definitions
# =============================================================================


@dataclass(frozen=True)
class SetDefinition:
    """Describes a Kubernetes-backed dispatcher set."""

    id: int
    namespace: str
    name: str
    port: str = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.namespace}:{self.name}={self.id}:{self.port}"


def parse_set_definition(
    raw: str,
    default_namespace: str = DEFAULT_NAMESPACE,
    default_port: str = DEFAULT_PORT,
) -> SetDefinition:
    """Parse a single set definition of the form ``[namespace:]name=index[:port]``."""
    item = raw.strip()
    if "=" not in item:
        raise ValueError(f"failed to parse {raw!r} as the form [namespace:]name=index")

    naming, index = item.split("=", 1)
    if ":" in naming:
        namespace, name = naming.split(":", 1)
    else:
        namespace, name = default_namespace, naming
    namespace = namespace.strip() or default_namespace
    name = name.strip()
    if not name:
        raise ValueError(f"missing service name in set definition {raw!r}")

    port = default_port
    if ":" in index:
        index, port = index.split(":", 1)
        port = port.strip() or default_port

    index = index.strip()
    if not re.fullmatch(r"\d+", index):
        raise ValueError(f"failed to parse index {index!r} as a non-negative integer")

    return SetDefinition(id=int(index), namespace=namespace, name=name, port=port)


def parse_set_definitions(
    raw: str,
    default_namespace: str = DEFAULT_NAMESPACE,
    default_port: str = DEFAULT_PORT,
) -> List[SetDefinition]:
    """Parse a comma-delimited list of set definitions."""
    return [
        parse_set_definition(item, default_namespace, default_port)
        for item in raw.split(",")
        if item.strip()
    ]


# =============================================================================
# Membership Source Interface
# =============================================================================


class DispatcherSet(ABC):
    """Abstract membership source for one dispatcher set."""

    @property
    @abstractmethod
    def id(self) -> int:
        """Return the dispatcher set index."""
        pass

    @abstractmethod
    def update(self) -> None:
        """Synchronously refresh the membership."""
        pass

    @abstractmethod
    def watch(self, stop: threading.Event) -> None:
        """Block until the membership changes.

        The new membership is visible through ``hosts()`` before this returns.
        Raises ``StreamClosed`` when the underlying stream ends without a
        change; any other exception is a watch failure.
        """
        pass

    @abstractmethod
    def hosts(self) -> List[str]:
        """Return the current member addresses as ``ip:port`` strings."""
        pass

    def export(self) -> str:
        """Render the set as kamailio dispatcher list lines."""
        return "".join(f"{self.id} sip:{host}\n" for host in sorted(self.hosts()))

    def close(self) -> None:
        """Interrupt a watch in progress so it returns promptly.

        Callers set the ``stop`` event given to ``watch`` before calling this.
        Default implementation does nothing.
        """


# =============================================================================
# Kubernetes API Client
# =============================================================================

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


class KubeClient:
    """Connection settings for the Kubernetes API server."""

    def __init__(
        self,
        server: str,
        *,
        token: str = "",
        verify: Union[bool, str] = True,
        cert: Optional[Tuple[str, str]] = None,
        timeout_seconds: float = 5.0,
    ):
        self.server = server.rstrip("/")
        self.token = token
        self.verify = verify
        self.cert = cert
        self.timeout = timeout_seconds

    def new_session(self) -> requests.Session:
        """Create a session configured for this API server.

        Each watcher owns its own session; sessions are not shared across threads.
        """
        session = requests.Session()
        if self.token:
            session.headers["Authorization"] = f"Bearer {self.token}"
        session.verify = self.verify
        if self.cert:
            session.cert = self.cert
        return session

    def url(self, path: str) -> str:
        return f"{self.server}{path}"


def _named(items: Any, name: str, key: str) -> Dict[str, Any]:
    for item in items or []:
        if isinstance(item, dict) and item.get("name") == name:
            return item.get(key) or {}
    raise ValueError(f"kubecfg has no {key} named {name!r}")


# Files written for inline kubecfg data, keyed by (data, suffix). Every
# supervised attempt reconnects, so the same data maps to the same file.
_materialized: Dict[Tuple[str, str], str] = {}
_materialized_lock = threading.Lock()


def _materialize(data: str, suffix: str) -> str:
    """Write base64 inline kubecfg data to a file, since requests only takes paths."""
    key = (data, suffix)
    with _materialized_lock:
        path = _materialized.get(key)
        if path and os.path.exists(path):
            return path

        content = base64.b64decode(data)
        fd, path = tempfile.mkstemp(prefix="dispatchers-", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        _materialized[key] = path
        return path


def _client_from_kubecfg(config: Dict[str, Any]) -> KubeClient:
    context_name = config.get("current-context")
    contexts = config.get("contexts") or []
    if not context_name:
        if not contexts:
            raise ValueError("kubecfg defines no contexts")
        context_name = contexts[0].get("name")
    context = _named(contexts, context_name, "context")
    cluster = _named(config.get("clusters"), context.get("cluster"), "cluster")
    user = _named(config.get("users"), context.get("user"), "user") if context.get("user") else {}

    server = cluster.get("server")
    if not server:
        raise ValueError(f"cluster for context {context_name!r} has no server")

    verify: Union[bool, str] = True
    if cluster.get("insecure-skip-tls-verify"):
        verify = False
    elif cluster.get("certificate-authority"):
        verify = cluster["certificate-authority"]
    elif cluster.get("certificate-authority-data"):
        verify = _materialize(cluster["certificate-authority-data"], ".crt")

    cert = None
    cert_file = user.get("client-certificate")
    key_file = user.get("client-key")
    if user.get("client-certificate-data"):
        cert_file = _materialize(user["client-certificate-data"], ".crt")
    if user.get("client-key-data"):
        key_file = _materialize(user["client-key-data"], ".key")
    if cert_file and key_file:
        cert = (cert_file, key_file)

    token = user.get("token") or ""
    if not token and user.get("tokenFile"):
        token = Path(user["tokenFile"]).read_text("utf-8").strip()

    return KubeClient(server, token=token, verify=verify, cert=cert)


def _in_cluster_client() -> KubeClient:
    host = os.environ["KUBERNETES_SERVICE_HOST"]
    port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
    if ":" in host:
        host = f"[{host}]"
    token = (SERVICE_ACCOUNT_DIR / "token").read_text("utf-8").strip()
    ca_path = SERVICE_ACCOUNT_DIR / "ca.crt"
    verify: Union[bool, str] = str(ca_path) if ca_path.exists() else True
    return KubeClient(f"https://{host}:{port}", token=token, verify=verify)


def connect(kubecfg: str = "") -> KubeClient:
    """Create a Kubernetes API client.

    Uses the in-cluster service account when running inside Kubernetes,
    otherwise reads the kubecfg file at ``kubecfg``.
    """
    try:
        if os.getenv("KUBERNETES_SERVICE_HOST"):
            return _in_cluster_client()

        if not kubecfg:
            raise ValueError("not running inside Kubernetes and no kubecfg given")
        with open(kubecfg, "r") as f:
            config = yaml.safe_load(f)
        if not isinstance(config, dict):
            raise ValueError(f"kubecfg {kubecfg} is not a mapping")
        return _client_from_kubecfg(config)
    except (OSError, ValueError, KeyError, yaml.YAMLError) as e:
        raise SourceConstructionError(f"failed to create Kubernetes client: {e}") from e


# =============================================================================
# Kubernetes-backed Dispatcher Set
# =============================================================================


def _format_host(ip: str, port: str) -> str:
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


class KubernetesSet(DispatcherSet):
    """Dispatcher set whose members are the ready addresses of a Service's Endpoints."""

    CHANGE_EVENTS = {"ADDED", "MODIFIED", "DELETED"}

    def __init__(
        self,
        client: KubeClient,
        set_id: int,
        namespace: str,
        name: str,
        port: str = DEFAULT_PORT,
        *,
        watch_timeout_seconds: int = 300,
    ):
        if set_id < 0:
            raise SourceConstructionError(f"invalid dispatcher set index {set_id}")
        if not namespace or not name:
            raise SourceConstructionError("namespace and name are required")

        self._client = client
        self._id = set_id
        self.namespace = namespace
        self.name = name
        self.port = port
        self._watch_timeout = watch_timeout_seconds
        self._session = client.new_session()

        self._lock = threading.Lock()
        self._hosts: Tuple[str, ...] = ()
        self._resource_version: Optional[str] = None
        self._response: Optional[requests.Response] = None

    @property
    def id(self) -> int:
        return self._id

    @property
    def _path(self) -> str:
        return f"/api/v1/namespaces/{self.namespace}/endpoints"

    @property
    def _selector(self) -> str:
        return f"metadata.name={self.name}"

    def hosts(self) -> List[str]:
        with self._lock:
            return list(self._hosts)

    def _hosts_from(self, endpoints: Dict[str, Any]) -> Tuple[str, ...]:
        found = set()
        for subset in endpoints.get("subsets") or []:
            for address in subset.get("addresses") or []:
                ip = address.get("ip")
                if ip:
                    found.add(_format_host(ip, self.port))
        return tuple(sorted(found))

    def _store(self, hosts: Tuple[str, ...], resource_version: Optional[str]) -> bool:
        with self._lock:
            changed = hosts != self._hosts
            self._hosts = hosts
            self._resource_version = resource_version
        return changed

    def update(self) -> None:
        # List rather than GET the object: a missing Endpoints object is an
        # empty set, and the list still carries a resourceVersion to watch from.
        response = self._session.get(
            self._client.url(self._path),
            params={"fieldSelector": self._selector},
            timeout=self._client.timeout,
        )
        response.raise_for_status()
        data = response.json()

        items = data.get("items") or []
        hosts = self._hosts_from(items[0]) if items else ()
        version = (data.get("metadata") or {}).get("resourceVersion")
        if self._store(hosts, version):
            logger.info(f"Set {self.id} ({self.namespace}/{self.name}): {len(hosts)} host(s)")

    def watch(self, stop: threading.Event) -> None:
        with self._lock:
            version = self._resource_version
        if version is None:
            # Nothing to resume from; a fresh listing counts as a change.
            self.update()
            return

        response = self._session.get(
            self._client.url(self._path),
            params={
                "watch": "1",
                "fieldSelector": self._selector,
                "resourceVersion": version,
                "timeoutSeconds": str(self._watch_timeout),
            },
            stream=True,
            timeout=(self._client.timeout, self._watch_timeout + 30),
        )
        with self._lock:
            self._response = response
        try:
            response.raise_for_status()
            # close() may have run before the response was registered.
            if not stop.is_set():
                for line in response.iter_lines():
                    if stop.is_set():
                        break
                    if not line:
                        continue
                    event = json.loads(line)
                    if self._handle_event(event):
                        return
        except (requests.exceptions.RequestException, ValueError):
            # A read cut short by close() surfaces as a broken stream.
            if not stop.is_set():
                raise
        finally:
            with self._lock:
                self._response = None
            response.close()

        raise StreamClosed(f"watch stream for {self.namespace}/{self.name} closed")

    def _handle_event(self, event: Dict[str, Any]) -> bool:
        """Apply one watch event; return True when the membership changed."""
        event_type = event.get("type")
        obj = event.get("object") or {}
        version = (obj.get("metadata") or {}).get("resourceVersion")

        if event_type == "ERROR":
            if obj.get("code") == 410:
                with self._lock:
                    self._resource_version = None
                raise StreamClosed(
                    f"resource version expired for {self.namespace}/{self.name}"
                )
            raise WatchError(f"watch of {self.namespace}/{self.name} failed: {obj.get('message')}")

        if event_type == "BOOKMARK":
            with self._lock:
                self._resource_version = version
            return False

        if event_type not in self.CHANGE_EVENTS:
            logger.debug(f"Ignoring watch event of type {event_type!r}")
            return False

        hosts = () if event_type == "DELETED" else self._hosts_from(obj)
        if self._store(hosts, version):
            logger.info(f"Set {self.id} ({self.namespace}/{self.name}): {len(hosts)} host(s)")
            return True
        return False

    def close(self) -> None:
        """Interrupt a watch in progress.

        Closing the response from another thread waits for the blocked read
        to finish, so the connection's socket is shut down instead. The
        watching thread then sees the stream end and closes the response
        itself. Callers set the event passed to ``watch`` first.
        """
        with self._lock:
            response = self._response
        if response is None:
            return

        connection = getattr(response.raw, "_connection", None)
        sock = getattr(connection, "sock", None)
        if sock is None:
            logger.debug(f"No open socket to interrupt for {self.namespace}/{self.name}")
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Watch socket for {self.namespace}/{self.name} already closed: {e}")
