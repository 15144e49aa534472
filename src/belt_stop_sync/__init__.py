from __future__ import annotations

import argparse
import logging
import sys
from datetime import date

from .store import DEFAULT_DB_FILENAME
from .transport import DEVICE_NAME_PREFIX, DeviceSelector

logger = logging.getLogger(__name__)

__version__ = "0.3.0"


def _parse_month(value: str) -> tuple[int, int]:
    try:
        year_str, month_str = value.split("-")
        year, month = int(year_str), int(month_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}")
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {value!r}")
    return year, month


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="belt-stop-sync",
        description=(
            "Operate a BLE belt-stop sensor: push time and detection settings, "
            "pull and store stop events, and export them as CSV."
        ),
    )
    parser.add_argument(
        "--address", help="BLE address of the device (scan when omitted)"
    )
    parser.add_argument(
        "--name-prefix",
        default=DEVICE_NAME_PREFIX,
        help=f"Advertised name prefix to match while scanning (default: {DEVICE_NAME_PREFIX})",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="Scan timeout in seconds",
    )
    parser.add_argument(
        "--db",
        default=DEFAULT_DB_FILENAME,
        help=f"SQLite database file for events and settings (default: {DEFAULT_DB_FILENAME})",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Dashboard server port (default: 8050)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Dashboard bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated device (no BLE hardware required)",
    )
    parser.add_argument(
        "--no-thresholds-on-hello",
        action="store_true",
        help="Do not push CFG,THRESH in the handshake after HELLO",
    )

    # Headless mode (default is the dashboard)
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run without the dashboard: connect, handshake and store events",
    )
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Request the device backlog (SYNC,REQ) after every HELLO",
    )
    parser.add_argument(
        "--exit-after-sync",
        action="store_true",
        help="Headless only: exit once the first sync completes (implies --sync)",
    )

    # Export mode
    parser.add_argument(
        "--export",
        choices=["day", "month", "all"],
        help="Write stored events as CSV and exit",
    )
    parser.add_argument(
        "--date",
        type=_parse_date,
        help="Day to export, YYYY-MM-DD (default: today)",
    )
    parser.add_argument(
        "--month",
        type=_parse_month,
        help="Month to export, YYYY-MM (default: this month)",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Export destination; '-' for stdout (default: beltstop-*.csv)",
    )

    args = parser.parse_args()

    # Logs go to stderr (and optionally a file) so CSV on stdout stays clean
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    if args.export:
        from .runner import run_export

        raise SystemExit(
            run_export(
                args.db,
                args.export,
                day=args.date,
                year_month=args.month,
                output=args.output,
            )
        )

    from .session import SessionOptions
    from .transport import Transport

    options = SessionOptions(
        push_thresholds_on_hello=not args.no_thresholds_on_hello,
        sync_on_hello=args.sync or args.exit_after_sync,
    )
    selector = DeviceSelector(
        address=args.address,
        name_prefix=args.name_prefix,
        scan_timeout=args.scan_timeout,
    )

    transport: Transport
    if args.mock:
        from .mock import MockTransport

        logger.info("🔧 Using simulated device (no BLE hardware required)")
        transport = MockTransport(
            live_event_interval=None if args.headless else 45.0
        )
    else:
        from .transport import BleTransport

        transport = BleTransport()

    if args.headless:
        from .runner import run_headless

        if args.address:
            logger.info(f"🔍 Connecting to BLE address: {args.address}")
        else:
            logger.info(f"🔍 Scanning for devices named {args.name_prefix}*")
        raise SystemExit(
            run_headless(
                transport,
                args.db,
                selector,
                options=options,
                exit_after_sync=args.exit_after_sync,
            )
        )

    # Default: dashboard mode
    from .dashboard import create_app
    from .store import SqliteEventStore, StorageError

    logger.info("🔧 Belt Stop Sync - Dashboard")
    logger.info("=" * 50)
    logger.info(f"🔍 Open http://{args.host}:{args.port} in your browser")
    logger.info("💡 Press Connect once the sensor is powered on and advertising")
    logger.info("=" * 50)

    try:
        store = SqliteEventStore(args.db)
    except StorageError as e:
        logger.error(f"❌ {e}")
        raise SystemExit(1)

    try:
        app = create_app(transport=transport, store=store, selector=selector, options=options)
        try:
            app.run(host=args.host, port=args.port)
        except KeyboardInterrupt:
            logger.info("🛑 Shutting down dashboard...")
    except Exception as e:
        logger.error(f"❌ Failed to start dashboard: {e}")
        raise SystemExit(1)
    finally:
        store.close_sync()
        logger.info("🏁 Dashboard stopped")
