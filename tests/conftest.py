import socket
import ssl
import threading
from contextlib import closing, contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from cf_speedcheck.transport import ProbeSample, Transport
from cf_speedcheck.exceptions import TransportError

DATA_DIR = Path(__file__).parent / "data"

TRACE_BODY = (
    "fl=123f45\n"
    "h=speed.cloudflare.com\n"
    "ip=203.0.113.7\n"
    "ts=1700000000.123\n"
    "colo=CGK\n"
    "loc=ID\n"
    "not a pair\n"
    "tls=TLSv1.3\n"
)

DOWN_SERVER_MS = 1.5
UP_SERVER_MS = 2.0


class SpeedHandler(BaseHTTPRequestHandler):
    """Emulates the /__down, /__up and /cdn-cgi/trace endpoints."""

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _reply(self, status, body=b"", server_ms=None):
        self.send_response(status)
        if server_ms is not None:
            self.send_header("Server-Timing", f"cfRequestDuration;dur={server_ms}")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        url = urlparse(self.path)
        if url.path == "/__down":
            size = int(parse_qs(url.query).get("bytes", ["0"])[0])
            self._reply(200, b"0" * size, server_ms=DOWN_SERVER_MS)
        elif url.path == "/cdn-cgi/trace":
            self._reply(200, TRACE_BODY.encode())
        elif url.path == "/broken":
            self._reply(500, b"boom")
        else:
            self._reply(404)

    def do_POST(self):
        url = urlparse(self.path)
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        self.server.uploads.append(len(body))
        if url.path == "/__up":
            self._reply(200, server_ms=UP_SERVER_MS)
        else:
            self._reply(404)


@contextmanager
def _running_server(ssl_context=None):
    server = ThreadingHTTPServer(("127.0.0.1", 0), SpeedHandler)
    if ssl_context is not None:
        server.socket = ssl_context.wrap_socket(server.socket, server_side=True)
    server.uploads = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5.0)


def server_host(server):
    host, port = server.server_address[:2]
    return f"{host}:{port}"


@pytest.fixture
def speed_server():
    """Start a local speed endpoint over plain HTTP."""
    with _running_server() as server:
        yield server


@pytest.fixture
def tls_speed_server():
    """Same endpoint behind TLS, using the self-signed cert in tests/data."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(DATA_DIR / "localhost.crt", DATA_DIR / "localhost.key")
    with _running_server(context) as server:
        yield server


@pytest.fixture
def transport(speed_server):
    return Transport(host=server_host(speed_server), scheme="http", timeout=5)


@pytest.fixture
def closed_port():
    """A local port nothing listens on."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_sample(ttfb=10.0, transfer=80.0, server_ms=None):
    return ProbeSample(
        started=0.0,
        dns_resolved=1.0,
        tcp_connected=2.0,
        tls_handshaked=3.0,
        first_byte=ttfb,
        ended=ttfb + transfer,
        server_processing_ms=server_ms,
    )


class FakeTransport:
    """
    Scripted stand-in for Transport.

    ``download_results`` / ``upload_results`` are consumed in order; each item
    is a ProbeSample or an exception to raise. When a script runs out, the
    matching ``default_*`` sample is returned.
    """

    def __init__(self, download_results=None, upload_results=None, trace=None,
                 default_download=None, default_upload=None):
        self.download_results = list(download_results or [])
        self.upload_results = list(upload_results or [])
        self.trace = trace if trace is not None else TRACE_BODY
        self.default_download = default_download or make_sample(ttfb=20.0, transfer=80.0, server_ms=5.0)
        self.default_upload = default_upload or make_sample(server_ms=80.0)
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, call):
        with self._lock:
            self.calls.append(call)

    @staticmethod
    def _next(script, default):
        item = script.pop(0) if script else default
        if isinstance(item, BaseException):
            raise item
        return item

    def download(self, bytes_size):
        self._record(("download", bytes_size))
        return self._next(self.download_results, self.default_download)

    def upload(self, bytes_size):
        self._record(("upload", bytes_size))
        return self._next(self.upload_results, self.default_upload)

    def get_text(self, path):
        self._record(("get_text", path))
        if isinstance(self.trace, BaseException):
            raise self.trace
        return self.trace


@pytest.fixture
def fake_transport():
    return FakeTransport()


def transport_error(message="connection reset"):
    return TransportError(message, cause=ConnectionResetError(message))
