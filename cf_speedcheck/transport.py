"""
Timing-instrumented HTTP(S) transport.

Every probe opens a fresh requests.Session (unless keep_alive is set) whose
adapter builds urllib3 connections that stamp DNS resolution, TCP connect and
TLS handshake times onto themselves. The probe copies those stamps, together
with first-byte and drain times, into an immutable ProbeSample. All stamps
are milliseconds on the time.perf_counter() clock.
"""

import logging
import re
import socket
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NameResolutionError, NewConnectionError
from urllib3.util import connection as urllib3_connection

from .exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "speed.cloudflare.com"
DEFAULT_TIMEOUT = 15  # seconds, per socket operation
DEFAULT_DEADLINE = 120  # seconds, whole request including the body
READ_CHUNK_BYTES = 64 * 1024

_SERVER_TIMING_RE = re.compile(r"dur=([0-9.]+)")


def _now_ms() -> float:
    return time.perf_counter() * 1000


@dataclass(frozen=True)
class ProbeSample:
    """Lifecycle timestamps of one request (ms, monotonic clock)."""

    started: float
    first_byte: float
    ended: float
    dns_resolved: Optional[float] = None  # None when the connection was reused
    tcp_connected: Optional[float] = None
    tls_handshaked: Optional[float] = None
    server_processing_ms: Optional[float] = None
    status_code: int = 200
    bytes_received: int = 0

    @property
    def ttfb_ms(self) -> float:
        return self.first_byte - self.started

    @property
    def transfer_ms(self) -> float:
        return self.ended - self.first_byte


def parse_server_timing(value: Optional[str]) -> Optional[float]:
    """
    Extract the processing duration from a Server-Timing header value.

    Args:
        value: Raw header value, e.g. "cfRequestDuration;dur=12.5"

    Returns:
        Duration in milliseconds, or None if the header is absent or has no dur
    """
    if not value:
        return None
    match = _SERVER_TIMING_RE.search(value)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


class _LifecycleMixin:
    """Records connection-phase timestamps into ``self.lifecycle``."""

    def _new_conn(self) -> socket.socket:
        self.lifecycle: Dict[str, float] = {}
        family = socket.AF_UNSPEC
        if self.source_address:
            family = socket.AF_INET6 if ":" in self.source_address[0] else socket.AF_INET
        try:
            addresses = socket.getaddrinfo(self.host, self.port, family, socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise NameResolutionError(self.host, self, e) from e
        self.lifecycle["dns_resolved"] = _now_ms()

        last_error: Optional[OSError] = None
        for _, _, _, _, sockaddr in addresses:
            try:
                sock = urllib3_connection.create_connection(
                    (sockaddr[0], self.port),
                    self.timeout,
                    source_address=self.source_address,
                    socket_options=self.socket_options,
                )
            except socket.timeout as e:
                raise ConnectTimeoutError(
                    self, f"Connection to {self.host} timed out. (connect timeout={self.timeout})"
                ) from e
            except OSError as e:
                last_error = e
                continue
            self.lifecycle["tcp_connected"] = _now_ms()
            return sock

        raise NewConnectionError(self, f"Failed to establish a new connection: {last_error}")


class TimedHTTPConnection(_LifecycleMixin, HTTPConnection):
    pass


class TimedHTTPSConnection(_LifecycleMixin, HTTPSConnection):
    def connect(self) -> None:
        super().connect()
        self.lifecycle["tls_handshaked"] = _now_ms()


class _TimedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = TimedHTTPConnection


class _TimedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = TimedHTTPSConnection


class LifecycleAdapter(HTTPAdapter):
    """
    requests adapter whose connections record lifecycle timestamps.

    Args:
        source_address: Local IP to bind outgoing sockets to, or None for the
                        default route
    """

    def __init__(self, source_address: Optional[str] = None, **kwargs):
        self.source_address = source_address
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        if self.source_address:
            pool_kwargs["source_address"] = (self.source_address, 0)
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _TimedHTTPConnectionPool,
            "https": _TimedHTTPSConnectionPool,
        }


def _take_lifecycle(response: requests.Response) -> Dict[str, float]:
    conn = getattr(response.raw, "connection", None)
    events = getattr(conn, "lifecycle", None)
    if not events:
        return {}
    taken = dict(events)
    events.clear()  # a reused connection must not report old handshakes
    return taken


class Transport:
    """
    Issues single instrumented requests against one speed test host.

    Proxy environment variables are ignored: behind a proxy the connection
    stamps would time the hop to the proxy, not to the endpoint.

    Args:
        host: Hostname (optionally with :port) of the speed test endpoint
        scheme: "https" (default) or "http"
        source_address: Local IP every request is bound to
        timeout: Per socket-operation timeout in seconds
        deadline: Upper bound in seconds for a whole request, body included
        verify: TLS verification, as accepted by requests (bool or CA bundle path)
        keep_alive: Reuse one pooled connection across probes. Samples taken
                    on a reused connection carry no DNS, TCP or TLS stamps.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        scheme: str = "https",
        source_address: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        deadline: float = DEFAULT_DEADLINE,
        verify: Union[bool, str] = True,
        keep_alive: bool = False,
    ):
        self.host = host
        self.scheme = scheme
        self.source_address = source_address
        self.timeout = timeout
        self.deadline = deadline
        self.verify = verify
        self.keep_alive = keep_alive
        self._shared_session: Optional[requests.Session] = None

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.trust_env = False
        session.verify = self.verify
        adapter = LifecycleAdapter(source_address=self.source_address)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _probe_session(self):
        if not self.keep_alive:
            return self._new_session()
        if self._shared_session is None:
            self._shared_session = self._new_session()
        return nullcontext(self._shared_session)

    def close(self) -> None:
        if self._shared_session is not None:
            self._shared_session.close()
            self._shared_session = None

    def probe(self, method: str, path: str, body: Optional[bytes] = None) -> ProbeSample:
        """
        Perform one request and return its timing sample.

        The response body is drained and discarded. Raises TransportError on
        any connection or protocol failure, a non-2xx status, or when the
        deadline passes before the body is drained.
        """
        headers = {}
        if body is not None:
            headers["Content-Length"] = str(len(body))

        with self._probe_session() as session:
            started = _now_ms()
            response = None
            try:
                response = session.request(
                    method,
                    f"{self.base_url}{path}",
                    data=body,
                    headers=headers,
                    stream=True,
                    timeout=self.timeout,
                )
                first_byte = _now_ms()
                lifecycle = _take_lifecycle(response)
                if not response.ok:
                    raise TransportError(
                        f"HTTP error {response.status_code}: {response.reason}",
                        status_code=response.status_code,
                    )

                received = 0
                limit = started + self.deadline * 1000
                for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
                    received += len(chunk)
                    if _now_ms() > limit:
                        raise TransportError(
                            f"Request to {path} exceeded the {self.deadline}s deadline"
                        )
                ended = _now_ms()
            except requests.RequestException as e:
                raise TransportError(cause=e) from e
            except OSError as e:
                raise TransportError(cause=e) from e
            finally:
                if response is not None:
                    response.close()

        return ProbeSample(
            started=started,
            dns_resolved=lifecycle.get("dns_resolved"),
            tcp_connected=lifecycle.get("tcp_connected"),
            tls_handshaked=lifecycle.get("tls_handshaked"),
            first_byte=first_byte,
            ended=ended,
            server_processing_ms=parse_server_timing(response.headers.get("server-timing")),
            status_code=response.status_code,
            bytes_received=received,
        )

    def download(self, bytes_size: int) -> ProbeSample:
        return self.probe("GET", f"/__down?bytes={bytes_size}")

    def upload(self, bytes_size: int) -> ProbeSample:
        return self.probe("POST", "/__up", b"0" * bytes_size)

    def get_text(self, path: str) -> str:
        """Plain GET returning the decoded body; raises TransportError on failure."""
        # Always a private session: this runs beside the latency probes
        with self._new_session() as session:
            try:
                response = session.get(f"{self.base_url}{path}", timeout=self.timeout)
                response.raise_for_status()
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                raise TransportError(cause=e, status_code=status) from e
            except requests.RequestException as e:
                raise TransportError(cause=e) from e
            return response.text
