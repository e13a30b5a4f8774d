"""Main speedtest implementation for the Cloudflare speed endpoint"""

import enum
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import urllib3

from .config import ConfigStore
from .exceptions import ConfigurationError, EndpointError, InvalidInputError, SpeedTestError, TransportError
from .interfaces import resolve_interface
from .transport import DEFAULT_HOST, Transport
from .utils import average, jitter, measure_speed, median, percentile

# Package logger (not root logger)
_logger = logging.getLogger("cf_speedcheck")
_logger.setLevel(logging.WARNING)  # Default to WARNING level
# Add a null handler if no handlers exist to avoid using root logger
if not _logger.handlers:
    _logger.addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)

LATENCY_PROBES = 20
LATENCY_PROBE_BYTES = 1000
BANDWIDTH_PERCENTILE = 0.9

# (bytes per request, iterations), run in order
DOWNLOAD_TIERS: List[Tuple[int, int]] = [
    (101_000, 1),
    (1_001_000, 8),
    (10_001_000, 6),
    (25_001_000, 4),
    (100_001_000, 1),
]
UPLOAD_TIERS: List[Tuple[int, int]] = [
    (11_000, 10),
    (101_000, 10),
    (1_001_000, 8),
]

TRACE_PATH = "/cdn-cgi/trace"

Listener = Callable[[str, Dict[str, Any]], None]


def set_log_level(level: int = logging.WARNING) -> None:
    """
    Set the logging level for the speedcheck package.

    Args:
        level: Logging level (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

    Examples:
        >>> import logging
        >>> from cf_speedcheck.speedtest import set_log_level
        >>> set_log_level(logging.INFO)  # Show progress lines
    """
    _logger.setLevel(level)


def silence_warnings() -> None:
    """Silence everything the package logs and urllib3's own warnings."""
    _logger.setLevel(logging.CRITICAL + 1)
    urllib3.disable_warnings()


def _log_info(text: str, data: Any) -> None:
    logger.info("%s: %s", text.ljust(15), data)


@dataclass(frozen=True)
class LatencyResult:
    """Aggregate of one latency phase, all values in milliseconds."""

    min: float
    max: float
    average: float
    median: float
    jitter: float

    @classmethod
    def from_samples(cls, samples: Sequence[float]) -> "LatencyResult":
        mean = average(samples)  # raises on an empty set
        return cls(
            min=min(samples),
            max=max(samples),
            average=mean,
            median=median(samples),
            jitter=jitter(samples),
        )


@dataclass(frozen=True)
class EndpointMetadata:
    ip: str
    location: str
    colo: str


def parse_trace(text: str) -> Dict[str, str]:
    """
    Parse a /cdn-cgi/trace body into a dict.

    Lines look like ``key=value``; lines without ``=`` are dropped.
    """
    data = {}
    for line in text.split("\n"):
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        data[key] = value
    return data


def fetch_endpoint_metadata(transport: Transport) -> EndpointMetadata:
    """
    Look up the client IP, its location and the serving colo.

    Raises:
        EndpointError: the lookup failed or returned none of the expected keys
    """
    try:
        text = transport.get_text(TRACE_PATH)
    except TransportError as e:
        raise EndpointError(f"Failed to fetch endpoint metadata: {e}") from e

    trace = parse_trace(text)
    if not any(trace.get(k) for k in ("ip", "loc", "colo")):
        raise EndpointError("Endpoint metadata lookup returned no usable data")
    return EndpointMetadata(ip=trace.get("ip", ""), location=trace.get("loc", ""), colo=trace.get("colo", ""))


def measure_latency(transport: Transport, num_packets: int = LATENCY_PROBES) -> LatencyResult:
    """
    Measure round-trip latency with sequential minimal downloads.

    Each sample is time-to-first-byte minus the server's reported processing
    time (taken as zero when the server does not report it). Failed probes are
    logged and left out.

    Args:
        transport: Transport bound to the speed test host
        num_packets: Number of probes to issue

    Returns:
        LatencyResult over the successful probes

    Raises:
        InvalidInputError: every probe failed
    """
    measurements: List[float] = []
    for _ in range(num_packets):
        try:
            sample = transport.download(LATENCY_PROBE_BYTES)
        except TransportError as e:
            logger.info("Error while pinging: %s", e)
            continue
        measurements.append(sample.ttfb_ms - (sample.server_processing_ms or 0.0))

    if not measurements:
        raise InvalidInputError(f"Failed to measure latency: all {num_packets} probes failed")
    return LatencyResult.from_samples(measurements)


def measure_download(transport: Transport, bytes_size: int, iterations: int) -> List[float]:
    """
    Download ``bytes_size`` bytes ``iterations`` times, one after another.

    Returns:
        Rates in Mbps, one per successful iteration, in issue order
    """
    measurements: List[float] = []
    for _ in range(iterations):
        try:
            sample = transport.download(bytes_size)
            measurements.append(measure_speed(bytes_size, sample.transfer_ms))
        except (TransportError, InvalidInputError) as e:
            logger.info("Error while downloading: %s", e)
    return measurements


def measure_upload(transport: Transport, bytes_size: int, iterations: int) -> List[float]:
    """
    Upload ``bytes_size`` zero bytes ``iterations`` times, one after another.

    The rate uses the server's own processing time, since the client only sees
    how fast its socket buffer accepted the data. Samples without a positive
    server time are dropped.

    Returns:
        Rates in Mbps, one per successful iteration, in issue order
    """
    measurements: List[float] = []
    for _ in range(iterations):
        try:
            sample = transport.upload(bytes_size)
            if sample.server_processing_ms is None:
                raise InvalidInputError("Upload response carried no server timing")
            measurements.append(measure_speed(bytes_size, sample.server_processing_ms))
        except (TransportError, InvalidInputError) as e:
            logger.info("Error while uploading: %s", e)
    return measurements


class Phase(enum.Enum):
    IDLE = "idle"
    RESOLVING_ENDPOINT = "resolving_endpoint"
    PROBING_LATENCY = "probing_latency"
    PROBING_DOWNLOAD = "probing_download"
    PROBING_UPLOAD = "probing_upload"
    REPORTING = "reporting"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class SpeedTestReport:
    """Everything one run measured. Speeds in Mbps, latency in ms."""

    latency: LatencyResult
    endpoint: EndpointMetadata
    download_measurements: Tuple[float, ...]
    upload_measurements: Tuple[float, ...]
    download_mbps: float
    upload_mbps: float

    @property
    def ping(self) -> int:
        # half-up: 12.5 -> 13
        return int(math.floor(self.latency.median + 0.5))

    def to_result(self) -> Dict[str, Any]:
        return {
            "ping": self.ping,
            "download": f"{self.download_mbps:.2f}",
            "upload": f"{self.upload_mbps:.2f}",
        }


class SpeedTest:
    """
    One speed test run against a single transport.

    Args:
        transport: Transport every request of the run goes through
        download_tiers: (bytes, iterations) pairs for the download phase
        upload_tiers: (bytes, iterations) pairs for the upload phase
        latency_probes: Number of latency probes
        bandwidth_percentile: Percentile reported for both directions (0-1 or 0-100)
    """

    def __init__(
        self,
        transport: Transport,
        download_tiers: Optional[Sequence[Tuple[int, int]]] = None,
        upload_tiers: Optional[Sequence[Tuple[int, int]]] = None,
        latency_probes: int = LATENCY_PROBES,
        bandwidth_percentile: float = BANDWIDTH_PERCENTILE,
    ):
        self.transport = transport
        self.download_tiers = list(download_tiers if download_tiers is not None else DOWNLOAD_TIERS)
        self.upload_tiers = list(upload_tiers if upload_tiers is not None else UPLOAD_TIERS)
        self.latency_probes = latency_probes
        self.bandwidth_percentile = bandwidth_percentile
        self.phase = Phase.IDLE

    def _enter(self, phase: Phase) -> None:
        logger.debug("Speed test phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def _run_tiers(self, measure: Callable[[Transport, int, int], List[float]],
                   tiers: Sequence[Tuple[int, int]], direction: str) -> List[float]:
        measurements: List[float] = []
        for bytes_size, iterations in tiers:
            tier = measure(self.transport, bytes_size, iterations)
            if not tier:
                logger.warning("All %d %s requests of %d bytes failed; tier left out of the result",
                               iterations, direction, bytes_size)
            measurements.extend(tier)
        if not measurements:
            raise InvalidInputError(f"Failed to measure {direction} speed. No successful measurements.")
        return measurements

    def run(self) -> SpeedTestReport:
        """
        Run every phase and return the report.

        Raises:
            SpeedTestError: any phase failed; ``phase`` is left at FAILED
        """
        try:
            self._enter(Phase.RESOLVING_ENDPOINT)
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="cf-trace") as executor:
                trace_future = executor.submit(fetch_endpoint_metadata, self.transport)
                self._enter(Phase.PROBING_LATENCY)
                latency = measure_latency(self.transport, self.latency_probes)
                endpoint = trace_future.result()

            _log_info("Server location", endpoint.colo)
            _log_info("Your IP", f"{endpoint.ip} ({endpoint.location})")
            _log_info("Latency", f"{latency.median:.2f} ms")
            _log_info("Jitter", f"{latency.jitter:.2f} ms")

            self._enter(Phase.PROBING_DOWNLOAD)
            download = self._run_tiers(measure_download, self.download_tiers, "download")
            download_mbps = percentile(download, self.bandwidth_percentile)
            _log_info("Download speed", f"{download_mbps:.2f} Mbps")

            self._enter(Phase.PROBING_UPLOAD)
            upload = self._run_tiers(measure_upload, self.upload_tiers, "upload")
            upload_mbps = percentile(upload, self.bandwidth_percentile)
            _log_info("Upload speed", f"{upload_mbps:.2f} Mbps")

            self._enter(Phase.REPORTING)
            report = SpeedTestReport(
                latency=latency,
                endpoint=endpoint,
                download_measurements=tuple(download),
                upload_measurements=tuple(upload),
                download_mbps=download_mbps,
                upload_mbps=upload_mbps,
            )
        except SpeedTestError:
            self._enter(Phase.FAILED)
            raise
        self._enter(Phase.SUCCESS)
        return report


def _notify(listener: Optional[Listener], event: str, payload: Dict[str, Any]) -> None:
    if listener is None:
        return
    try:
        listener(event, payload)
    except Exception:
        logger.exception("Result listener failed on %s event", event)


def run_speed_test_with_report(
    config: Optional[ConfigStore] = None,
    listener: Optional[Listener] = None,
    transport_factory: Callable[..., Transport] = Transport,
    resolver: Callable[[str], Optional[str]] = resolve_interface,
) -> Tuple[Dict[str, Any], Optional[SpeedTestReport]]:
    """
    Run a full speed test; return the result dict and, on success, the report.

    The result is ``{"ping", "download", "upload"}`` on success or
    ``{"error"}`` on failure, in which case the report is None. This function
    never raises for a failed test.

    Args:
        config: Settings source, loaded from the default location when omitted
        listener: Called with ("finished", result) or ("failed", result)
        transport_factory: Builds the Transport (host, source_address, timeout)
        resolver: Maps the configured interface name to a local address
    """
    report = None
    try:
        if config is None:
            config = ConfigStore.load()

        interface = config.get_value("interface")
        if not interface:
            raise ConfigurationError()
        source_address = resolver(interface)
        if not source_address:
            raise ConfigurationError(interface=interface)

        transport = transport_factory(
            host=config.get_value("host", DEFAULT_HOST),
            source_address=source_address,
            timeout=float(config.get_value("timeout")),
        )
        test = SpeedTest(
            transport,
            latency_probes=int(config.get_value("latency_probes")),
            bandwidth_percentile=float(config.get_value("percentile")),
        )
        report = test.run()
        result = report.to_result()
    except (SpeedTestError, ValueError, OSError) as e:
        logger.error("Error while using Cloudflare speedtest: %s", e)
        result = {"error": str(e)}
    except Exception as e:
        logger.exception("Unexpected error while using Cloudflare speedtest")
        result = {"error": str(e) or e.__class__.__name__}
    else:
        _notify(listener, "finished", result)
        return result, report

    _notify(listener, "failed", result)
    return result, None


def run_speed_test(
    config: Optional[ConfigStore] = None,
    listener: Optional[Listener] = None,
    transport_factory: Callable[..., Transport] = Transport,
    resolver: Callable[[str], Optional[str]] = resolve_interface,
) -> Dict[str, Any]:
    """
    Run a full speed test bound to the configured interface.

    An unset interface fails with ``{"error": "Invalid interface"}`` just like
    one that does not resolve. See run_speed_test_with_report for the rest.
    """
    result, _ = run_speed_test_with_report(config, listener, transport_factory, resolver)
    return result
