"""Shared plumbing for service components."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from ..database import Database


class Component:
    """
    Base class for components that own a slice of the domain.

    Every component receives the storage client it works against. Public
    operations accept an optional ``conn`` so several components can take
    part in one caller-owned transaction; without it they open their own.
    """

    def __init__(self, db: Database):
        self.db = db
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @asynccontextmanager
    async def _unit_of_work(
        self, conn: aiosqlite.Connection | None = None
    ) -> AsyncIterator[aiosqlite.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.db.transaction() as own:
            yield own

    @asynccontextmanager
    async def _reading(
        self, conn: aiosqlite.Connection | None = None
    ) -> AsyncIterator[aiosqlite.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.db.read() as own:
            yield own
