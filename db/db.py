from contextlib import asynccontextmanager
from typing import Optional

import psycopg

from config import get_settings


@asynccontextmanager
async def get_conn(dsn: Optional[str] = None):
    """
    simple async context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    async with await psycopg.AsyncConnection.connect(
        dsn or get_settings().database_dsn, autocommit=False
    ) as conn:
        yield conn
