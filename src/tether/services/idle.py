"""Idle-time derivation from connector status transitions."""

from collections.abc import Iterable
from datetime import datetime

import aiosqlite

from ..models import Event, Session
from ..repositories import EventRepository

IDLE_STATUSES = frozenset({"SuspendedEV", "SuspendedEVSE", "Finishing"})


def idle_minutes_from_transitions(
    transitions: Iterable[tuple[datetime, str | None]],
    started_at: datetime,
    stopped_at: datetime,
) -> int:
    """
    Whole minutes inside ``[started_at, stopped_at]`` spent in an idle status.

    ``transitions`` are ``(occurred_at, status)`` pairs in chronological
    order. A status reported before the window still applies from
    ``started_at`` until the next transition.
    """
    if stopped_at <= started_at:
        return 0

    idle_seconds = 0.0
    current: str | None = None
    since = started_at

    for occurred_at, status in transitions:
        if occurred_at <= started_at:
            current = status
            continue
        if occurred_at >= stopped_at:
            break
        if current in IDLE_STATUSES:
            idle_seconds += (occurred_at - since).total_seconds()
        current = status
        since = occurred_at

    if current in IDLE_STATUSES:
        idle_seconds += (stopped_at - since).total_seconds()

    return int(idle_seconds // 60)


def _status_of(event: Event) -> str | None:
    status = event.payload.get("status")
    return str(status) if status is not None else None


async def idle_minutes_for_session(
    conn: aiosqlite.Connection, session: Session, until: datetime
) -> int:
    """
    Idle minutes for ``session`` between its start and ``until``.

    Status is tracked per connector, so a session without a known connector
    reports no idle time rather than borrowing its neighbours' statuses.
    """
    if session.started_at is None or not session.charge_box_id or session.connector_id is None:
        return 0
    events = await EventRepository(conn).status_history(
        session.charge_box_id, session.connector_id, until
    )
    return idle_minutes_from_transitions(
        ((event.occurred_at, _status_of(event)) for event in events),
        session.started_at,
        until,
    )
