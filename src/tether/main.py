"""Command-line entry point for the Tether orchestration core."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from prometheus_client import start_http_server

from tether.config import Settings, load_settings
from tether.database import Database
from tether.errors import TetherError
from tether.logging_utils import log_error, setup_logging
from tether.plugins import FluentdAuditPlugin, PrometheusMetricsPlugin
from tether.service import OrchestratorService

logger = logging.getLogger(__name__)


def _json_body(value: str) -> dict[str, Any]:
    try:
        body = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(body, dict):
        raise argparse.ArgumentTypeError("JSON body must be an object")
    return body


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether", description="Tether - EV charging fleet orchestration core"
    )
    parser.add_argument(
        "--db",
        default=settings.db_path,
        help=f"Path to SQLite database file (default: {settings.db_path})",
    )
    parser.add_argument(
        "--db-timeout",
        type=float,
        default=settings.db_timeout,
        help="Seconds to wait for the database write lock (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: %(default)s)",
    )
    parser.add_argument("--log-file", default=settings.log_file, help="Also log to this file")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=settings.metrics_port,
        help="Port for Prometheus metrics HTTP server (default: disabled)",
    )
    parser.add_argument(
        "--fluentd-endpoint",
        default=settings.fluentd_endpoint,
        help="Fluentd endpoint in host:port format (e.g., localhost:24224). "
        "If provided, enables Fluentd audit logging.",
    )
    parser.add_argument(
        "--fluentd-tag",
        default=settings.fluentd_tag,
        help="Tag prefix for Fluentd events (default: %(default)s)",
    )
    parser.add_argument(
        "--requested-by",
        default=settings.requested_by,
        help="Actor recorded on created commands (default: %(default)s)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    ingest = sub.add_parser("ingest", help="Ingest events (one JSON object per line)")
    ingest.add_argument(
        "file",
        nargs="?",
        type=argparse.FileType("r"),
        default=sys.stdin,
        help="File of JSON events, one per line (default: stdin)",
    )

    start = sub.add_parser("remote-start", help="Issue a RemoteStart command")
    start.add_argument("--charge-box-id", required=True)
    start.add_argument("--id-tag", required=True)
    start.add_argument("--connector-id", type=int)
    start.add_argument("--reservation-id", type=int)

    stop = sub.add_parser("remote-stop", help="Issue a RemoteStop command")
    stop.add_argument("--transaction-id", type=int, required=True)

    dispatch = sub.add_parser("dispatch-result", help="Record a dispatch channel answer")
    dispatch.add_argument("command_id", type=int)
    verdict = dispatch.add_mutually_exclusive_group(required=True)
    verdict.add_argument("--accepted", dest="accepted", action="store_true")
    verdict.add_argument("--rejected", dest="accepted", action="store_false")

    command = sub.add_parser("command", help="Show a command and its status history")
    command.add_argument("command_id", type=int)

    commands = sub.add_parser("commands", help="List commands")
    commands.add_argument("--transaction-id", type=int)
    commands.add_argument("--charge-box-id")
    commands.add_argument("--status")
    commands.add_argument("--limit", type=int)

    session = sub.add_parser("session", help="Show a session by transaction id")
    session.add_argument("transaction_id", type=int)

    sessions = sub.add_parser("sessions", help="List sessions")
    sessions.add_argument("--charge-box-id")
    sessions.add_argument("--id-tag")
    sessions.add_argument("--status", choices=["active", "completed"])
    sessions.add_argument("--from", dest="from_")
    sessions.add_argument("--to")
    sessions.add_argument("--limit", type=int)
    sessions.add_argument("--offset", type=int)
    sessions.add_argument("--sort", choices=["asc", "desc"])

    events = sub.add_parser("events", help="List stored events")
    events.add_argument("--event-type")
    events.add_argument("--charge-box-id")
    events.add_argument("--transaction-id", type=int)
    events.add_argument("--limit", type=int)
    events.add_argument("--offset", type=int)
    events.add_argument("--sort", choices=["asc", "desc"])

    for name, help_text in (
        ("billing-start", "Start billing for a transaction"),
        ("billing-refresh", "Estimate the running cost of a session"),
        ("billing-close", "Close a session and write its invoice"),
        ("tariff-create", "Publish a tariff version"),
        ("tariff-preview", "Preview the cost of a planned session"),
    ):
        body_cmd = sub.add_parser(name, help=help_text)
        body_cmd.add_argument("body", type=_json_body, help="Request body as a JSON object")

    resolve = sub.add_parser("tariff-resolve", help="Show the tariff in force")
    resolve.add_argument("--charge-box-id")
    resolve.add_argument("--mode", default="AC")
    resolve.add_argument("--at", dest="active_at")

    invoice = sub.add_parser("invoice", help="Show an invoice")
    invoice.add_argument("invoice_id", type=int)

    invoices = sub.add_parser("invoices", help="List invoices (default: last 30 days)")
    invoices.add_argument("--from", dest="from_")
    invoices.add_argument("--to")
    invoices.add_argument("--charge-box-id")
    invoices.add_argument("--id-tag")
    invoices.add_argument("--limit", type=int)

    return parser


def create_plugins(args: argparse.Namespace, parser: argparse.ArgumentParser) -> list:
    plugins = []

    if args.metrics_port:
        plugins.append(PrometheusMetricsPlugin())

    if args.fluentd_endpoint:
        try:
            address = Settings(fluentd_endpoint=args.fluentd_endpoint).fluentd_address
        except ValueError as e:
            parser.error(f"Invalid --fluentd-endpoint {args.fluentd_endpoint}: {e}")
        host, port = address
        plugins.append(FluentdAuditPlugin(tag_prefix=args.fluentd_tag, host=host, port=port))

    return plugins


async def _ingest_lines(service: OrchestratorService, stream) -> list[dict[str, Any]]:
    results = []
    for line_no, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            body = json.loads(line)
        except json.JSONDecodeError as e:
            results.append({"line": line_no, "error": "invalid_payload", "message": str(e)})
            continue
        try:
            results.append({"line": line_no, **await service.ingest_event(body)})
        except TetherError as e:
            if e.retryable:
                raise
            results.append({"line": line_no, **e.to_dict()})
    return results


async def dispatch(service: OrchestratorService, args: argparse.Namespace) -> Any:  # noqa: PLR0911
    """Run the operation selected on the command line."""
    command = args.command
    if command == "init-db":
        return {"initialized": args.db}
    if command == "ingest":
        return await _ingest_lines(service, args.file)
    if command == "remote-start":
        return await service.remote_start(
            {
                "charge_box_id": args.charge_box_id,
                "id_tag": args.id_tag,
                "connector_id": args.connector_id,
                "reservation_id": args.reservation_id,
            }
        )
    if command == "remote-stop":
        return await service.remote_stop({"transaction_id": args.transaction_id})
    if command == "dispatch-result":
        return await service.dispatch_result(args.command_id, {"accepted": args.accepted})
    if command == "command":
        return await service.get_command(args.command_id)
    if command == "commands":
        return await service.list_commands(
            transaction_id=args.transaction_id,
            charge_box_id=args.charge_box_id,
            status=args.status,
            limit=args.limit,
        )
    if command == "session":
        return await service.get_session(args.transaction_id)
    if command == "sessions":
        return await service.list_sessions(
            charge_box_id=args.charge_box_id,
            id_tag=args.id_tag,
            status=args.status,
            from_=args.from_,
            to=args.to,
            limit=args.limit,
            offset=args.offset,
            sort=args.sort,
        )
    if command == "events":
        return await service.list_events(
            event_type=args.event_type,
            charge_box_id=args.charge_box_id,
            transaction_id=args.transaction_id,
            limit=args.limit,
            offset=args.offset,
            sort=args.sort,
        )
    if command == "billing-start":
        return await service.billing_start(args.body)
    if command == "billing-refresh":
        return await service.billing_refresh(args.body)
    if command == "billing-close":
        return await service.billing_close(args.body)
    if command == "tariff-create":
        return await service.create_tariff(args.body)
    if command == "tariff-preview":
        return await service.preview_tariff(args.body)
    if command == "tariff-resolve":
        return await service.resolve_tariff(
            charge_box_id=args.charge_box_id, mode=args.mode, active_at=args.active_at
        )
    if command == "invoice":
        return await service.get_invoice(args.invoice_id)
    if command == "invoices":
        return await service.list_invoices(
            from_=args.from_,
            to=args.to,
            charge_box_id=args.charge_box_id,
            id_tag=args.id_tag,
            limit=args.limit,
        )
    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    settings = load_settings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)
    plugins = create_plugins(args, parser)

    if args.metrics_port:
        start_http_server(args.metrics_port)

    logger.info(
        "System starting",
        extra={
            "event_type": "system_startup",
            "event_data": {
                "database": args.db,
                "command": args.command,
                "metrics_port": args.metrics_port,
                "fluentd_enabled": args.fluentd_endpoint is not None,
                "fluentd_endpoint": args.fluentd_endpoint,
            },
        },
    )

    db = Database(args.db, timeout=args.db_timeout)
    async with OrchestratorService(db, plugins=plugins, requested_by=args.requested_by) as service:
        try:
            result = await dispatch(service, args)
        except TetherError as e:
            print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
            return 2 if e.code == "invalid_payload" else 1

    print(json.dumps(result, indent=2, default=str))
    return 0


def run():
    """Entry point for console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nShutdown complete")
    except Exception as e:
        log_error(logger, "fatal_error", f"Fatal error: {e}", exc_info=e)
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
