"""Argument parser options for speedcheck"""


def add_run_options(parser):
    """
    Add speedcheck-specific command line options to an argument parser.

    Options left unset fall back to the config store.

    Args:
        parser: argparse.ArgumentParser instance

    Returns:
        The parser with added options
    """
    parser.add_argument(
        '--config',
        help='Path to a JSON config file (default: $CF_SPEEDCHECK_CONFIG or speedcheck.json)'
    )
    parser.add_argument(
        '--interface', '-i',
        help='Network interface to bind every request to (e.g. eth0)'
    )
    parser.add_argument(
        '--host',
        help='Speed test host (default: speed.cloudflare.com)'
    )
    parser.add_argument(
        '--percentile',
        type=float,
        help='Percentile to use for bandwidth calculation (0-100, default: 90)'
    )
    parser.add_argument(
        '--timeout',
        type=int,
        help='Per-request socket timeout in seconds (default: 15)'
    )
    parser.add_argument(
        '--latency-probes',
        type=int,
        help='Number of latency probes (default: 20)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the result as JSON'
    )
    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Only print the final result'
    )
    return parser


def apply_run_options(args, config):
    """Copy options given on the command line into a ConfigStore."""
    for key in ('interface', 'host', 'percentile', 'timeout', 'latency_probes'):
        value = getattr(args, key, None)
        if value is not None:
            config.set_value(key, value)
    return config
