"""
postgres-backed document store: one jsonb document per row, one table per
collection. every primitive is a single statement, so it is atomic on its
row without a surrounding transaction.
"""

from contextlib import asynccontextmanager
from typing import Dict, Optional

import psycopg
from psycopg.errors import UniqueViolation

from db import repositories
from db.db import get_conn
from document_store import DuplicateKeyError
from errors import StoreUnavailable


class PostgresCollection:
    def __init__(self, table: str, dsn: Optional[str] = None):
        self.table = table
        self.dsn = dsn

    @asynccontextmanager
    async def _conn(self, options):
        """
        caller-owned session: run on it and leave commit/rollback to the caller.
        otherwise: own connection, committed per call.
        """
        session = options.session if options is not None else None
        if session is not None:
            yield session
            return

        async with get_conn(self.dsn) as conn:
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def _run(self, options, fn, *args):
        try:
            async with self._conn(options) as conn:
                return await fn(conn, self.table, *args)
        except psycopg.OperationalError as e:
            raise StoreUnavailable(str(e)) from e

    async def find(self, key, fields=None, options=None):
        return await self._run(options, repositories.find_document, key, fields)

    async def insert(self, document, options=None):
        try:
            return await self._run(options, repositories.insert_document, document)
        except UniqueViolation as e:
            raise DuplicateKeyError(document["id"]) from e

    async def push_child(self, key, level, entry, options=None):
        return await self._run(options, repositories.push_child, key, level, entry)

    async def set_payload(self, key, payload, options=None):
        return await self._run(options, repositories.set_payload, key, payload)

    async def set_child_payload(self, key, level, child_id, payload, options=None):
        return await self._run(
            options, repositories.set_child_payload, key, level, child_id, payload
        )

    async def pull_child(self, key, level, child_id, options=None):
        return await self._run(options, repositories.pull_child, key, level, child_id)

    async def delete(self, key, options=None):
        return await self._run(options, repositories.delete_document, key)


class PostgresDocumentStore:
    """store handle; collection(name) maps to the table of the same name."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn
        self._collections: Dict[str, PostgresCollection] = {}

    def collection(self, name: str) -> PostgresCollection:
        if name not in self._collections:
            self._collections[name] = PostgresCollection(name, self.dsn)
        return self._collections[name]
