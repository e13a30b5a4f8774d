"""Cloudflare Speedcheck - latency, jitter and throughput against speed.cloudflare.com"""

__version__ = "1.0.0"

from .exceptions import ConfigurationError, EndpointError, InvalidInputError, SpeedTestError, TransportError
from .speedtest import (
    SpeedTest, SpeedTestReport, run_speed_test, run_speed_test_with_report, set_log_level, silence_warnings,
)
from .transport import ProbeSample, Transport
from .utils import average, jitter, measure_speed, median, percentile

__all__ = [
    'ConfigurationError', 'EndpointError', 'InvalidInputError', 'SpeedTestError', 'TransportError',
    'SpeedTest', 'SpeedTestReport', 'run_speed_test', 'run_speed_test_with_report', 'set_log_level', 'silence_warnings',
    'ProbeSample', 'Transport',
    'average', 'jitter', 'measure_speed', 'median', 'percentile',
]
