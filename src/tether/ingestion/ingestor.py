"""Event ingestion: at-most-once persistence of telemetry events."""

from dataclasses import dataclass
from datetime import UTC, datetime

import aiosqlite

from ..errors import EventNotFoundError
from ..logging_utils import log_domain_event
from ..models import Event, NormalizedEvent
from ..repositories import EventRepository
from ..schemas import EventFilter
from ..services.base import Component
from .dedup import derive_dedup_key


@dataclass(frozen=True)
class IngestResult:
    """
    Outcome of an ingest call.

    A duplicate is a successful outcome: ``accepted`` is True either way and
    ``duplicate`` tells the caller whether the event was already stored.
    """

    duplicate: bool
    dedup_key: str
    event: NormalizedEvent
    event_id: int | None = None
    accepted: bool = True

    @property
    def is_new(self) -> bool:
        return not self.duplicate


class EventIngestor(Component):
    """Stores each logical occurrence of a telemetry event exactly once."""

    async def ingest(
        self,
        event: NormalizedEvent,
        conn: aiosqlite.Connection | None = None,
        received_at: datetime | None = None,
    ) -> IngestResult:
        """
        Persist ``event`` unless its dedup key has been seen before.

        Storage faults propagate as StorageError / TransientStorageError
        (raised by the transaction wrapper); both leave nothing behind.
        """
        received_at = received_at or datetime.now(UTC)
        dedup_key = derive_dedup_key(event, received_at)

        record = Event(
            source=event.source,
            event_type=event.event_type,
            payload=event.payload,
            charge_box_id=event.charge_box_id,
            connector_id=event.connector_id,
            transaction_id=event.transaction_id,
            id_tag=event.id_tag,
            dedup_key=dedup_key,
            occurred_at=event.timestamp or received_at,
            created_at=received_at,
        )

        async with self._unit_of_work(conn) as uow:
            event_id = await EventRepository(uow).insert_if_absent(record)

        duplicate = event_id is None
        log_domain_event(
            self.logger,
            "event_duplicate" if duplicate else "event_ingested",
            event_type=event.event_type,
            dedup_key=dedup_key,
            event_id=event_id,
            transaction_id=event.transaction_id,
            charge_box_id=event.charge_box_id,
        )
        return IngestResult(
            duplicate=duplicate,
            dedup_key=dedup_key,
            event=event,
            event_id=event_id,
        )

    async def get(self, event_id: int, conn: aiosqlite.Connection | None = None) -> Event:
        async with self._reading(conn) as uow:
            event = await EventRepository(uow).get_by_id(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found", event_id=event_id)
        return event

    async def search(self, criteria: EventFilter) -> list[Event]:
        async with self._reading() as uow:
            return await EventRepository(uow).search(
                event_type=criteria.event_type,
                charge_box_id=criteria.charge_box_id,
                connector_id=criteria.connector_id,
                transaction_id=criteria.transaction_id,
                id_tag=criteria.id_tag,
                created_from=criteria.from_,
                created_to=criteria.to,
                limit=criteria.limit,
                offset=criteria.offset,
                ascending=criteria.sort == "asc",
            )
