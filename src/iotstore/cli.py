"""Command line interface of the telemetry store.

Examples:
    .. code-block:: bash

        iotstore stats
        iotstore compress
        iotstore cleanup
        iotstore logs --level error --tail --limit 20
        iotstore query --device dev-1 --device dev-2 --datastream temperature \\
            --start 2024-01-01T10:00:00Z --end 2024-01-01T11:00:00Z --interval 5m
"""

import argparse
import json
import sys
from typing import Any, Optional

from loguru import logger

from iotstore.config.config import get_config
from iotstore.core.logabc import LOGGING_LEVELS
from iotstore.core.logging import configure_logging, read_file_log
from iotstore.core.reader import StoreQueryError
from iotstore.core.store import TelemetryStore


def cli_argument_parser() -> argparse.ArgumentParser:
    """Build argument parser for the iotstore cli."""
    parser = argparse.ArgumentParser(
        prog="iotstore", description="Maintain and query the telemetry store."
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default=None,
        help='Log level for the console. Options: "critical", "error", "warning", "info", '
        '"debug", "trace" (default: value from config)',
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Show record counts of both tiers.")
    subparsers.add_parser("compress", help="Compact aged raw samples now.")
    subparsers.add_parser("cleanup", help="Sweep raw samples older than the retention window.")

    query = subparsers.add_parser("query", help="Query a datastream in a time range.")
    query.add_argument(
        "--device",
        dest="devices",
        action="append",
        required=True,
        help="Device id. Repeat for several devices.",
    )
    query.add_argument("--datastream", required=True, help="Datastream id.")
    query.add_argument("--start", required=True, help="Range start (inclusive), ISO 8601.")
    query.add_argument("--end", required=True, help="Range end (exclusive), ISO 8601.")
    query.add_argument(
        "--interval",
        default=None,
        help='Average raw samples per interval, e.g. "5m", "1h" (default: none)',
    )
    query.add_argument(
        "--limit", type=int, default=1000, help="Maximum points per device (default: 1000)"
    )

    logs = subparsers.add_parser("logs", help="Show entries of the log file.")
    logs.add_argument("--level", default=None, help='Only entries of this level, e.g. "error".')
    logs.add_argument("--contains", default=None, help="Only messages containing this text.")
    logs.add_argument("--regex", default=None, help="Only messages matching this expression.")
    logs.add_argument(
        "--from", dest="from_time", default=None, help="Entries not before this time, ISO 8601."
    )
    logs.add_argument(
        "--to", dest="to_time", default=None, help="Entries not after this time, ISO 8601."
    )
    logs.add_argument(
        "--limit", type=int, default=100, help="Maximum number of entries (default: 100)"
    )
    logs.add_argument("--tail", action="store_true", help="Show the last matching entries.")
    return parser


def cli_parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments of the iotstore cli.

    If ``argv`` is ``None``, arguments are read from ``sys.argv[1:]``.
    """
    return cli_argument_parser().parse_args(argv)


def cli_apply_args_to_config(args: argparse.Namespace) -> None:
    """Apply parsed CLI arguments to the store configuration.

    Currently handled arguments:

        - log_level: Updates "logging/console_level" in config.
    """
    config_iot = get_config()
    if args.log_level is not None:
        log_level = args.log_level.upper()
        if log_level in LOGGING_LEVELS:
            config_iot.merge_settings_from_dict({"logging": {"console_level": log_level}})
        else:
            logger.warning(f"Unknown log level '{args.log_level}' ignored.")
    configure_logging(config_iot)


def _read_logs(args: argparse.Namespace) -> list[dict[str, Any]]:
    log_path = get_config().logging.file_path
    if log_path is None:
        raise FileNotFoundError("Log file path not configured")
    logs = read_file_log(
        log_path,
        limit=args.limit,
        level=args.level,
        contains=args.contains,
        regex=args.regex,
        from_time=args.from_time,
        to_time=args.to_time,
        tail=args.tail,
    )
    entries = []
    for log in logs:
        record = log.get("record", log)
        entries.append(
            {
                "time": record.get("time", {}).get("repr"),
                "level": record.get("level", {}).get("name"),
                "message": record.get("message"),
            }
        )
    return entries


def _run_command(store: TelemetryStore, args: argparse.Namespace) -> Any:
    if args.command == "logs":
        return _read_logs(args)
    if args.command == "stats":
        return {
            "distribution": store.get_distribution_stats().model_dump(mode="json"),
            "compression": store.compression_stats().model_dump(mode="json"),
            "raw": store.raw_stats().model_dump(mode="json"),
            "should_cleanup": store.should_cleanup(),
        }
    if args.command == "compress":
        return store.force_compress().model_dump(mode="json")
    if args.command == "cleanup":
        return store.force_cleanup().model_dump(mode="json")
    points = store.query_range(
        args.devices, args.datastream, args.start, args.end, args.limit, args.interval
    )
    return [point.model_dump(mode="json") for point in points]


def main(argv: Optional[list[str]] = None) -> int:
    """Run the iotstore cli.

    Returns:
        int: Process exit code.
    """
    args = cli_parse_args(argv)
    cli_apply_args_to_config(args)

    store = TelemetryStore()
    try:
        output = _run_command(store, args)
    except ValueError as e:
        logger.error(f"Invalid arguments: {e}")
        return 2
    except StoreQueryError as e:
        logger.error(f"Query failed: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Cannot read log file: {e}")
        return 1
    finally:
        store.close()

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
