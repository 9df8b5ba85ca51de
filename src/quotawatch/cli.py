import argparse

from quotawatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="quotawatch",
        description="AI coding subscription usage monitor and Prometheus exporter",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to listen on (default: :9186)",
    )
    parser.add_argument(
        "--probe.interval",
        dest="probe_interval",
        type=int,
        default=300,
        help="Probe interval in seconds (default: 300)",
    )
    parser.add_argument(
        "--probe.timeout",
        dest="probe_timeout",
        type=float,
        default=30.0,
        help="Per-provider probe timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single probe cycle, log the results and exit",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.probe_interval = args.probe_interval
    config.probe_timeout = args.probe_timeout
    config.log_level = args.log_level
    config.once = args.once
    return config
