"""In-process service boundary for the orchestration core."""

import functools
import logging
from datetime import UTC, datetime
from typing import Any

from .database import Database
from .errors import InternalError, StorageError, TetherError
from .ingestion import EventIngestor, normalize_event
from .logging_utils import log_error
from .models import (
    ChargingMode,
    Command,
    CommandTransition,
    Event,
    Invoice,
    Session,
    StartTransactionEvent,
    StopTransactionEvent,
    Tariff,
)
from .plugins.base import OrchestratorPlugin, PluginContext, PluginHook
from .schemas import (
    BillingCloseRequest,
    BillingRefreshRequest,
    BillingStartRequest,
    CommandFilter,
    DispatchResultRequest,
    EventFilter,
    EventInput,
    InvoiceFilter,
    RemoteStartRequest,
    RemoteStopRequest,
    SessionFilter,
    TariffCreate,
    TariffPreviewRequest,
    TariffQuery,
    parse,
)
from .services import (
    BillingCalculator,
    CommandOrchestrator,
    CommandResult,
    SessionTracker,
    TariffResolver,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _text(value) -> str | None:
    return str(value) if value is not None else None


def serialize_session(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "transaction_id": session.transaction_id,
        "charge_box_id": session.charge_box_id,
        "id_tag": session.id_tag,
        "connector_id": session.connector_id,
        "mode": session.mode.value,
        "status": session.status.value,
        "pending_start": session.pending_start,
        "started_at": _iso(session.started_at),
        "stopped_at": _iso(session.stopped_at),
        "stop_reason": session.stop_reason,
        "duration_seconds": session.duration_seconds(),
        "energy_kwh": _text(session.energy_kwh),
        "revenue": _text(session.revenue),
        "idle_minutes": session.idle_minutes,
        "pricing_snapshot": (
            session.pricing_snapshot.to_dict() if session.pricing_snapshot else None
        ),
        "created_at": _iso(session.created_at),
        "updated_at": _iso(session.updated_at),
    }


def serialize_command(command: Command) -> dict[str, Any]:
    return {
        "id": command.id,
        "command_type": command.command_type.value,
        "charge_box_id": command.charge_box_id,
        "transaction_id": command.transaction_id,
        "idempotency_key": command.idempotency_key,
        "status": command.status.value,
        "payload": command.payload,
        "response": command.response,
        "session_id": command.session_id,
        "requested_by": command.requested_by,
        "created_at": _iso(command.created_at),
        "updated_at": _iso(command.updated_at),
    }


def serialize_transition(transition: CommandTransition) -> dict[str, Any]:
    return {
        "from_status": transition.from_status.value if transition.from_status else None,
        "to_status": transition.to_status.value,
        "response": transition.response,
        "created_at": _iso(transition.created_at),
    }


def serialize_event(event: Event, include_dedup_key: bool = True) -> dict[str, Any]:
    data = {
        "id": event.id,
        "source": event.source,
        "event_type": event.event_type,
        "payload": event.payload,
        "charge_box_id": event.charge_box_id,
        "connector_id": event.connector_id,
        "transaction_id": event.transaction_id,
        "id_tag": event.id_tag,
        "occurred_at": _iso(event.occurred_at),
        "created_at": _iso(event.created_at),
    }
    if include_dedup_key:
        data["dedup_key"] = event.dedup_key
    return data


def serialize_tariff(tariff: Tariff) -> dict[str, Any]:
    return {
        "id": tariff.id,
        "scope": {"type": tariff.scope.value, "charge_box_id": tariff.charge_box_id},
        "applies_mode": tariff.applies_mode.value,
        "valid_from": _iso(tariff.valid_from),
        "valid_to": _iso(tariff.valid_to),
        "price_ac_kwh": str(tariff.price_ac_kwh),
        "price_dc_kwh": str(tariff.price_dc_kwh),
        "connection_fee": str(tariff.connection_fee),
        "idle_fee_per_minute": str(tariff.idle_fee_per_minute),
        "idle_grace_minutes": tariff.idle_grace_minutes,
        "created_at": _iso(tariff.created_at),
    }


def serialize_invoice(invoice: Invoice) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "session_id": invoice.session_id,
        "transaction_id": invoice.transaction_id,
        "charge_box_id": invoice.charge_box_id,
        "id_tag": invoice.id_tag,
        "started_at": _iso(invoice.started_at),
        "stopped_at": _iso(invoice.stopped_at),
        "energy_kwh": str(invoice.energy_kwh),
        "idle_minutes": invoice.idle_minutes,
        "total": str(invoice.total),
        "breakdown": invoice.breakdown,
        "created_at": _iso(invoice.created_at),
    }


def _command_response(result: CommandResult) -> dict[str, Any]:
    return {
        "command_id": result.command.id,
        "command_type": result.command.command_type.value,
        "status": result.command.status.value,
        "idempotent_duplicate": result.idempotent_duplicate,
    }


def _filters(filters: dict[str, Any]) -> dict[str, Any]:
    """Drop unset filter values so schema defaults apply."""
    return {key: value for key, value in filters.items() if value is not None}


def _page(items: list[dict[str, Any]]) -> dict[str, Any]:
    return {"count": len(items), "items": items}


def boundary(method):
    """
    Map failures of a boundary method to the error contract.

    TetherError subclasses propagate unchanged (storage faults are logged);
    anything else is logged with its traceback and raised as InternalError.
    """

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except StorageError as e:
            log_error(
                logger,
                e.code,
                f"{method.__name__} failed: {e.message}",
                exc_info=e,
                operation=method.__name__,
                retryable=e.retryable,
            )
            raise
        except TetherError:
            raise
        except Exception as e:
            log_error(
                logger,
                "internal_error",
                f"{method.__name__} failed unexpectedly: {e}",
                exc_info=e,
                operation=method.__name__,
            )
            raise InternalError(f"{method.__name__} failed", operation=method.__name__) from e

    return wrapper


class OrchestratorService:
    """
    Validates raw input, runs each operation in one storage transaction and
    returns JSON-serializable responses.

    Input bodies accept both snake_case and camelCase keys (``id_tag`` or
    ``idTag``); responses always use snake_case, so a command comes back as
    ``command_id`` and ``idempotent_duplicate`` rather than ``commandId`` and
    ``idempotentDuplicate``. Stored command payloads keep the charge box's
    camelCase wire form.

    Supports a plugin system; hooks run after the transaction has committed.
    """

    def __init__(
        self,
        db: Database,
        plugins: list[OrchestratorPlugin] | None = None,
        requested_by: str = "api",
    ):
        self.db = db
        self.ingestor = EventIngestor(db)
        self.sessions = SessionTracker(db)
        self.commands = CommandOrchestrator(db, requested_by=requested_by)
        self.tariffs = TariffResolver(db)
        self.billing = BillingCalculator(db, tariffs=self.tariffs)

        # Initialize plugin system
        self.plugins: list[OrchestratorPlugin] = plugins or []
        self._plugin_hooks: dict[PluginHook, list[tuple[OrchestratorPlugin, str]]] = {}
        self._register_plugins()

    async def start(self):
        """Ensure the schema exists and initialize plugins."""
        await self.db.initialize_schema()
        for plugin in self.plugins:
            try:
                await plugin.initialize(self)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_initialization_error",
                    f"Error initializing plugin {plugin.__class__.__name__}: {e}",
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )

    async def stop(self):
        """Clean up plugins and close the storage client."""
        for plugin in self.plugins:
            try:
                await plugin.cleanup(self)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_cleanup_error",
                    f"Error cleaning up plugin {plugin.__class__.__name__}: {e}",
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )
        await self.db.disconnect()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Ingestion

    @boundary
    async def ingest_event(self, body: dict[str, Any]) -> dict[str, Any]:
        """
        Store a telemetry event once and apply its session and command effects.

        Duplicates are a success (``duplicate: True``) and have no effects.
        """
        data = parse(EventInput, body)
        event = normalize_event(data)

        session = None
        completed = None
        async with self.db.transaction() as conn:
            result = await self.ingestor.ingest(event, conn=conn)
            if result.is_new:
                session = await self.sessions.apply(event, conn=conn)
                completion = None
                receipt = {
                    "event_id": result.event_id,
                    "event_type": event.event_type,
                    "transaction_id": event.transaction_id,
                }
                if isinstance(event, StopTransactionEvent) and event.transaction_id is not None:
                    completion = await self.commands.complete_remote_stop(
                        event.transaction_id, response=receipt, conn=conn
                    )
                elif (
                    isinstance(event, StartTransactionEvent)
                    and event.charge_box_id
                    and event.id_tag
                ):
                    completion = await self.commands.complete_remote_start(
                        event.charge_box_id, event.id_tag, response=receipt, conn=conn
                    )
                if completion is not None and completion.completed:
                    completed = await self.commands.get(completion.command_id, conn=conn)

        response = {
            "accepted": result.accepted,
            "duplicate": result.duplicate,
            "event_id": result.event_id,
        }
        hook_data = data.model_dump(mode="json", exclude_none=True)

        if result.duplicate:
            await self._execute_plugin_hooks(PluginHook.AFTER_DUPLICATE_EVENT, hook_data, response)
            return response

        await self._execute_plugin_hooks(PluginHook.AFTER_EVENT_INGESTED, hook_data, response)
        if session is not None:
            hook = (
                PluginHook.AFTER_SESSION_STARTED
                if isinstance(event, StartTransactionEvent)
                else PluginHook.AFTER_SESSION_STOPPED
            )
            await self._execute_plugin_hooks(hook, hook_data, serialize_session(session))
        if completed is not None:
            await self._execute_plugin_hooks(
                PluginHook.AFTER_COMMAND_COMPLETED, hook_data, serialize_command(completed)
            )
        return response

    @boundary
    async def get_event(self, event_id: int) -> dict[str, Any]:
        return serialize_event(await self.ingestor.get(event_id))

    @boundary
    async def list_events(self, **filters) -> dict[str, Any]:
        criteria = parse(EventFilter, _filters(filters))
        events = await self.ingestor.search(criteria)
        return _page([serialize_event(event, include_dedup_key=False) for event in events])

    # Commands

    @boundary
    async def remote_start(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(RemoteStartRequest, body)
        result = await self.commands.issue_remote_start(request)
        return await self._command_created(request, result)

    @boundary
    async def remote_stop(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(RemoteStopRequest, body)
        result = await self.commands.issue_remote_stop(request)
        return await self._command_created(request, result)

    async def _command_created(self, request, result: CommandResult) -> dict[str, Any]:
        response = _command_response(result)
        hook = (
            PluginHook.AFTER_COMMAND_DUPLICATE
            if result.idempotent_duplicate
            else PluginHook.AFTER_COMMAND_CREATED
        )
        await self._execute_plugin_hooks(hook, request.model_dump(mode="json"), response)
        return response

    @boundary
    async def dispatch_result(self, command_id: int, body: dict[str, Any]) -> dict[str, Any]:
        """Record the dispatch channel's answer for a sent command."""
        request = parse(DispatchResultRequest, body)
        command = await self.commands.record_dispatch_result(
            command_id, request.accepted, response=request.response
        )
        response = serialize_command(command)
        await self._execute_plugin_hooks(
            PluginHook.AFTER_COMMAND_TRANSITION,
            {"command_id": command_id, **request.model_dump(mode="json")},
            response,
        )
        return response

    @boundary
    async def get_command(self, command_id: int) -> dict[str, Any]:
        command = await self.commands.get(command_id)
        history = await self.commands.history(command_id)
        return {
            **serialize_command(command),
            "history": [serialize_transition(item) for item in history],
        }

    @boundary
    async def list_commands(self, **filters) -> dict[str, Any]:
        criteria = parse(CommandFilter, _filters(filters))
        commands = await self.commands.search(criteria)
        return _page([serialize_command(command) for command in commands])

    # Sessions

    @boundary
    async def get_session(self, transaction_id: int) -> dict[str, Any]:
        return serialize_session(await self.sessions.get(transaction_id))

    @boundary
    async def list_sessions(self, **filters) -> dict[str, Any]:
        criteria = parse(SessionFilter, _filters(filters))
        sessions = await self.sessions.search(criteria)
        return _page([serialize_session(session) for session in sessions])

    # Billing

    @boundary
    async def billing_start(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(BillingStartRequest, body)
        session = await self.billing.start_billing(request)
        response = serialize_session(session)
        await self._execute_plugin_hooks(
            PluginHook.AFTER_BILLING_STARTED, request.model_dump(mode="json"), response
        )
        return response

    @boundary
    async def billing_refresh(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(BillingRefreshRequest, body)
        estimate = await self.billing.refresh_billing(request)
        return {
            "transaction_id": estimate.session.transaction_id,
            "meter_start": estimate.meter_start,
            "meter_latest": estimate.meter_latest,
            "pricing": estimate.pricing.to_dict(),
            "breakdown": estimate.breakdown.to_dict(),
            "estimated_total": str(estimate.breakdown.total),
            "as_of": _iso(estimate.as_of),
        }

    @boundary
    async def billing_close(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(BillingCloseRequest, body)
        closed = await self.billing.close_session(request)
        response = {
            "session": serialize_session(closed.session),
            "invoice": serialize_invoice(closed.invoice),
            "breakdown": closed.breakdown.to_dict(),
            "duration_seconds": closed.duration_seconds,
        }
        await self._execute_plugin_hooks(
            PluginHook.AFTER_SESSION_CLOSED, request.model_dump(mode="json"), response
        )
        return response

    @boundary
    async def get_invoice(self, invoice_id: int) -> dict[str, Any]:
        return serialize_invoice(await self.billing.get_invoice(invoice_id))

    @boundary
    async def list_invoices(self, **filters) -> dict[str, Any]:
        criteria = parse(InvoiceFilter, _filters(filters))
        invoices = await self.billing.search_invoices(criteria)
        return _page([serialize_invoice(invoice) for invoice in invoices])

    # Tariffs

    @boundary
    async def create_tariff(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(TariffCreate, body)
        response = serialize_tariff(await self.tariffs.create_tariff(request))
        await self._execute_plugin_hooks(
            PluginHook.AFTER_TARIFF_CREATED, request.model_dump(mode="json"), response
        )
        return response

    @boundary
    async def resolve_tariff(self, **query) -> dict[str, Any]:
        request = parse(TariffQuery, _filters(query))
        tariff = await self.tariffs.resolve(
            request.charge_box_id, ChargingMode(request.mode), request.active_at
        )
        return serialize_tariff(tariff)

    @boundary
    async def preview_tariff(self, body: dict[str, Any]) -> dict[str, Any]:
        request = parse(TariffPreviewRequest, body)
        preview = await self.tariffs.preview(request)
        return {
            "tariff": serialize_tariff(preview.tariff),
            "mode": preview.mode.value,
            "breakdown": preview.breakdown.to_dict(),
            "as_of": _iso(request.active_at or datetime.now(UTC)),
        }

    # Plugins

    def _register_plugins(self):
        """Register all plugins and build hook mapping."""
        for plugin in self.plugins:
            try:
                hooks = plugin.hooks()
                for hook, method_name in hooks.items():
                    if hook not in self._plugin_hooks:
                        self._plugin_hooks[hook] = []
                    self._plugin_hooks[hook].append((plugin, method_name))
            except Exception as e:
                log_error(
                    logger,
                    "plugin_registration_error",
                    f"Failed to register plugin {plugin.__class__.__name__}: {e}",
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )

    async def _execute_plugin_hooks(self, hook: PluginHook, data: dict, result=None):
        """
        Execute all registered plugin hooks for a given lifecycle point.

        Args:
            hook: The hook point to execute
            data: The validated operation input
            result: The response returned to the caller
        """
        if hook not in self._plugin_hooks:
            return

        context = PluginContext(service=self, hook=hook, data=data, result=result)

        for plugin, method_name in self._plugin_hooks[hook]:
            try:
                method = getattr(plugin, method_name)
                await method(context)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_execution_error",
                    f"Error executing {plugin.__class__.__name__}.{method_name} "
                    f"for hook {hook.value}: {e}",
                    plugin=plugin.__class__.__name__,
                    hook=hook.value,
                    method=method_name,
                    exc_info=e,
                )
