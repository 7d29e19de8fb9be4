"""Primary election through a lock on a single key in Consul's key/value store."""

from __future__ import annotations

import base64
import json
import logging
import posixpath
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit

import requests

from .duration import format_duration

__all__ = [
    "DEFAULT_SESSION_NAME",
    "DEFAULT_TTL",
    "DEFAULT_LOCK_DELAY",
    "HANDOFF_TIMEOUT",
    "PrimaryInfo",
    "LeaseError",
    "PrimaryExistsError",
    "NoPrimaryError",
    "LeaseExpiredError",
    "Leaser",
    "Lease",
]

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "litefs"
DEFAULT_TTL = 10.0
DEFAULT_LOCK_DELAY = 1.0
HANDOFF_TIMEOUT = 5.0


class LeaseError(Exception):
    """Raised when a lease operation against Consul fails."""


class PrimaryExistsError(LeaseError):
    """Raised when another node already holds the primary lease."""

    def __init__(self, message: str = "primary exists") -> None:
        super().__init__(message)


class NoPrimaryError(LeaseError):
    """Raised when no node currently holds the primary lease."""

    def __init__(self, message: str = "no primary") -> None:
        super().__init__(message)


class LeaseExpiredError(LeaseError):
    """Raised when a lease no longer exists and cannot be renewed."""

    def __init__(self, message: str = "lease expired") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class PrimaryInfo:
    """Identity of the primary node, as stored under the lease key."""

    hostname: str = ""
    advertise_url: str = ""

    def to_json(self) -> bytes:
        return json.dumps(
            {"hostname": self.hostname, "advertiseURL": self.advertise_url},
            separators=(",", ":"),
        ).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "PrimaryInfo":
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("primary info must be a JSON object")
        return cls(
            hostname=str(obj.get("hostname") or ""),
            advertise_url=str(obj.get("advertiseURL") or ""),
        )


def _join(*parts: str) -> str:
    present = [p for p in parts if p]
    if not present:
        return ""
    joined = posixpath.normpath("/".join(present))
    if joined.startswith("/"):
        joined = "/" + joined.lstrip("/")
    return joined


def _lock_delay_ms(seconds: float) -> str:
    ms = int(seconds * 1000)
    if seconds > 0 and ms == 0:
        ms = 1
    return f"{ms}ms"


class Leaser:
    """Obtains a distributed lock on a single Consul key."""

    type = "consul"

    def __init__(self, consul_url: str, key: str, hostname: str, advertise_url: str) -> None:
        self._consul_url = consul_url
        self._hostname = hostname
        self._advertise_url = advertise_url
        self._http: requests.Session | None = None
        self._base_url = ""

        self.session_name = DEFAULT_SESSION_NAME
        self.key = key
        self.key_prefix = ""
        self.ttl = DEFAULT_TTL
        self.lock_delay = DEFAULT_LOCK_DELAY

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def advertise_url(self) -> str:
        return self._advertise_url

    def __enter__(self) -> "Leaser":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def open(self) -> None:
        """Validate settings, create the HTTP client and register the shared node."""
        parts = urlsplit(self._consul_url)

        if not self.key:
            raise ValueError("must specify a consul key")
        if not self._hostname:
            raise ValueError("must specify a hostname for this node")
        if not self._advertise_url:
            raise ValueError("must specify an advertise URL for this node")

        session = requests.Session()
        if parts.password:
            session.headers["X-Consul-Token"] = parts.password
        self._http = session
        self._base_url = f"{parts.scheme or 'http'}://{parts.netloc.rpartition('@')[2]}"

        prefix = parts.path[1:] if parts.path.startswith("/") else parts.path
        if prefix:
            self.key_prefix = prefix

        node_name = self.node_name()
        if node_name:
            try:
                self._request(
                    "PUT",
                    "/v1/catalog/register",
                    json={"Node": node_name, "Address": "localhost"},
                )
            except LeaseError as exc:
                raise LeaseError(f'register node "{node_name}": {exc}') from exc

    def close(self) -> None:
        """Release the underlying HTTP client."""
        if self._http is not None:
            self._http.close()

    def node_name(self) -> str:
        """Return the node name derived from the key prefix, or an empty string."""
        if not self.key_prefix:
            return ""
        return _join(self.key_prefix, "litefs")

    def _kv_key(self) -> str:
        return _join(self.key_prefix, self.key)

    def _kv_value(self) -> bytes:
        return PrimaryInfo(self._hostname, self._advertise_url).to_json()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        data: bytes | None = None,
        allow_not_found: bool = False,
    ) -> requests.Response | None:
        if self._http is None:
            raise LeaseError("consul leaser is not open")
        try:
            resp = self._http.request(
                method, self._base_url + path, params=params, json=json, data=data
            )
        except requests.RequestException as exc:
            raise LeaseError(str(exc)) from exc
        if allow_not_found and resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise LeaseError(f"unexpected response code: {resp.status_code} ({resp.text})")
        return resp

    def _kv_path(self, key: str) -> str:
        return "/v1/kv/" + quote(key, safe="/")

    def _kv_get(self, key: str) -> bytes | None:
        resp = self._request("GET", self._kv_path(key), allow_not_found=True)
        if resp is None:
            return None
        entries = resp.json() or []
        if not entries:
            return None
        encoded = entries[0].get("Value")
        return base64.b64decode(encoded) if encoded else b""

    def _kv_lock(self, action: str, session_id: str, value: bytes | None) -> bool:
        resp = self._request(
            "PUT", self._kv_path(self._kv_key()), params={action: session_id}, data=value
        )
        return "true" in resp.text

    def _create_session(self) -> str:
        body: dict[str, Any] = {"NodeChecks": []}
        if self.session_name:
            body["Name"] = self.session_name
        node_name = self.node_name()
        if node_name:
            body["Node"] = node_name
        if self.lock_delay:
            body["LockDelay"] = _lock_delay_ms(self.lock_delay)
        body["Behavior"] = "delete"
        body["TTL"] = format_duration(self.ttl)
        resp = self._request("PUT", "/v1/session/create", json=body)
        return resp.json()["ID"]

    def acquire(self) -> "Lease":
        """Create a session, lock the key with it and store this node's info."""
        try:
            session_id = self._create_session()
        except (LeaseError, ValueError, KeyError) as exc:
            raise LeaseError(f"create consul session: {exc}") from exc
        lease = Lease(self, session_id, time.time())

        try:
            value = self._kv_value()
            try:
                acquired = self._kv_lock("acquire", session_id, value)
            except LeaseError as exc:
                raise LeaseError(f"put consul key/value: {exc}") from exc
            if not acquired:
                raise PrimaryExistsError()
        except Exception:
            try:
                lease.close()
            except LeaseError:
                pass
            raise
        return lease

    def acquire_existing(self, lease_id: str) -> "Lease":
        """Take over the key with an existing session, e.g. after a handoff."""
        lease = Lease(self, lease_id, time.time())
        lease.renew()

        value = self._kv_value()
        try:
            acquired = self._kv_lock("acquire", lease_id, value)
        except LeaseError as exc:
            raise LeaseError(f"replace consul key/value: {exc}") from exc
        if not acquired:
            raise PrimaryExistsError()
        return lease

    def primary_info(self) -> PrimaryInfo:
        """Return the current primary's info, or raise NoPrimaryError."""
        value = self._kv_get(self._kv_key())
        if not value:
            raise NoPrimaryError()
        return PrimaryInfo.from_json(value)

    def cluster_id_key(self) -> str:
        """Return the key under which the cluster ID is stored."""
        return _join(self.key_prefix, self.key, "clusterid")

    def cluster_id(self) -> str:
        """Return the stored cluster ID, or an empty string if none is set."""
        value = self._kv_get(self.cluster_id_key())
        if value is None:
            return ""
        return value.decode()

    def set_cluster_id(self, cluster_id: str) -> None:
        """Store the cluster ID; fails if one has already been set."""
        if self.cluster_id():
            raise LeaseError("cluster already initialized, cannot set cluster id")
        self._request("PUT", self._kv_path(self.cluster_id_key()), data=cluster_id.encode())


class Lease:
    """A lock held through a Consul session."""

    handoff_timeout = HANDOFF_TIMEOUT

    def __init__(self, leaser: Leaser, session_id: str, renewed_at: float) -> None:
        self._leaser = leaser
        self._session_id = session_id
        self.renewed_at = renewed_at
        self._handoff_lock = threading.Lock()
        self._handoff_queue: queue.Queue[int] = queue.Queue(maxsize=1)
        self._handoff_taken = threading.Semaphore(0)

    @property
    def id(self) -> str:
        return self._session_id

    @property
    def ttl(self) -> float:
        return self._leaser.ttl

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def renew(self) -> None:
        """Reset the session TTL; raises LeaseExpiredError if it no longer exists."""
        resp = self._leaser._request(
            "PUT", f"/v1/session/renew/{quote(self._session_id, safe='')}", allow_not_found=True
        )
        if resp is None or not (resp.json() or []):
            raise LeaseExpiredError()
        self.renewed_at = time.time()

    def handoff(self, node_id: int) -> None:
        """Pass ``node_id`` to a waiter in ``wait_handoff``, within the handoff timeout."""
        deadline = time.monotonic() + self.handoff_timeout
        if not self._handoff_lock.acquire(timeout=self.handoff_timeout):
            raise TimeoutError("consul handoff timeout")
        try:
            self._handoff_queue.put_nowait(node_id)
            remaining = max(0.0, deadline - time.monotonic())
            if self._handoff_taken.acquire(timeout=remaining):
                return
            try:
                self._handoff_queue.get_nowait()
            except queue.Empty:
                # A waiter took it just as the deadline passed.
                self._handoff_taken.acquire()
                return
            raise TimeoutError("consul handoff timeout")
        finally:
            self._handoff_lock.release()

    def wait_handoff(self, timeout: float | None = None) -> int | None:
        """Wait for a handoff request and return its node ID, or None on timeout."""
        try:
            node_id = self._handoff_queue.get(timeout=timeout)
        except queue.Empty:
            return None
        self._handoff_taken.release()
        return node_id

    def close(self) -> None:
        """Release the key and destroy the session."""
        kv_key = self._leaser._kv_key()
        try:
            released = self._leaser._kv_lock("release", self._session_id, None)
        except LeaseError:
            logger.warning("consul key release error: key=%s session=%s", kv_key, self._session_id)
        else:
            if not released:
                logger.warning(
                    "cannot release consul key: key=%s session=%s", kv_key, self._session_id
                )

        self._leaser._request("PUT", f"/v1/session/destroy/{quote(self._session_id, safe='')}")