#!/usr/bin/env python3
"""Command line entry point: run a speed test and print the result"""

import argparse
import json
import logging
import sys

from .config import ConfigStore
from .interfaces import default_interface
from .options import add_run_options, apply_run_options
from .speedtest import run_speed_test_with_report, set_log_level

logger = logging.getLogger("cf_speedcheck.cli")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="cf-speedcheck",
        description="Measure latency, jitter and throughput against speed.cloudflare.com.",
    )
    add_run_options(parser)
    args = parser.parse_args(argv)

    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    set_log_level(logging.WARNING if args.quiet else logging.INFO)

    try:
        config = ConfigStore.load(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: cannot read config: {e}", file=sys.stderr)
        return 1
    apply_run_options(args, config)

    if not config.get_value("interface"):
        interface = default_interface()
        if interface:
            logger.info("No interface configured, using %s (default route)", interface)
            config.set_value("interface", interface)

    if not args.quiet and not args.json:
        print("Running speed test, this may take a minute...\n")

    result, report = run_speed_test_with_report(config)

    if args.json:
        print(json.dumps(result))
        return 1 if "error" in result else 0

    if "error" in result:
        print(f"Error: {result['error']}", file=sys.stderr)
        return 1

    print("=" * 50)
    print("Results")
    print("=" * 50)
    print(f"Server:   {report.endpoint.colo}")
    print(f"Your IP:  {report.endpoint.ip} ({report.endpoint.location})")
    print(f"Latency:  {report.latency.median:.2f} ms")
    print(f"Jitter:   {report.latency.jitter:.2f} ms")
    print(f"Ping:     {result['ping']} ms")
    print(f"Download: {result['download']} Mbps")
    print(f"Upload:   {result['upload']} Mbps")
    print("=" * 50)
    return 0


if __name__ == "__main__":
    sys.exit(main())
