from typing import Any, Dict, Iterable, List, Optional

from psycopg import AsyncConnection, sql
from psycopg.types.json import Jsonb

Document = Dict[str, Any]


def _children_path(level: int) -> List[str]:
    return ["children", str(level)]


def _projection(fields: Optional[Iterable[str]]) -> sql.Composable:
    """SELECT list for the whole document, or a jsonb object of just `fields` (+ id)."""
    if fields is None:
        return sql.SQL("doc")

    wanted = ["id"] + [f for f in fields if f != "id"]
    pairs = sql.SQL(", ").join(
        sql.SQL("{}, doc -> {}").format(sql.Literal(f), sql.Literal(f)) for f in wanted
    )
    # fields missing from the document come back as null; drop them
    return sql.SQL("jsonb_strip_nulls(jsonb_build_object({}))").format(pairs)


async def create_table(conn: AsyncConnection, table: str) -> None:
    """create the collection table if it is not there yet (see db/schema.sql)."""
    async with conn.cursor() as cur:
        await cur.execute(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {} (id TEXT PRIMARY KEY, doc JSONB NOT NULL)"
            ).format(sql.Identifier(table))
        )


async def find_document(
    conn: AsyncConnection,
    table: str,
    key: str,
    fields: Optional[Iterable[str]] = None,
) -> Optional[Document]:
    query = sql.SQL("SELECT {} FROM {} WHERE id = %s").format(
        _projection(fields), sql.Identifier(table)
    )
    async with conn.cursor() as cur:
        await cur.execute(query, (key,))
        row = await cur.fetchone()
        return row[0] if row else None


async def insert_document(conn: AsyncConnection, table: str, doc: Document) -> str:
    """
    insert a new document. relies on the primary key for uniqueness:
    a taken id raises psycopg.errors.UniqueViolation.
    """
    async with conn.cursor() as cur:
        await cur.execute(
            sql.SQL("INSERT INTO {} (id, doc) VALUES (%s, %s)").format(sql.Identifier(table)),
            (doc["id"], Jsonb(doc)),
        )
    return doc["id"]


async def push_child(
    conn: AsyncConnection,
    table: str,
    key: str,
    level: int,
    entry: Document,
) -> Optional[Document]:
    """
    append `entry` to children[level] in one statement and return the new doc.
    the row lock keeps concurrent appends from losing each other.
    """
    query = sql.SQL(
        """
        UPDATE {}
        SET doc = jsonb_set(
            doc,
            %(path)s::text[],
            COALESCE(doc #> %(path)s::text[], '[]'::jsonb) || jsonb_build_array(%(entry)s::jsonb)
        )
        WHERE id = %(key)s
        RETURNING doc
        """
    ).format(sql.Identifier(table))
    async with conn.cursor() as cur:
        await cur.execute(
            query,
            {"path": _children_path(level), "entry": Jsonb(entry), "key": key},
        )
        row = await cur.fetchone()
        return row[0] if row else None


async def set_payload(
    conn: AsyncConnection,
    table: str,
    key: str,
    payload: str,
) -> Optional[Document]:
    query = sql.SQL(
        """
        UPDATE {}
        SET doc = jsonb_set(doc, ARRAY['payload'], %(payload)s::jsonb)
        WHERE id = %(key)s
        RETURNING doc
        """
    ).format(sql.Identifier(table))
    async with conn.cursor() as cur:
        await cur.execute(query, {"payload": Jsonb(payload), "key": key})
        row = await cur.fetchone()
        return row[0] if row else None


async def set_child_payload(
    conn: AsyncConnection,
    table: str,
    key: str,
    level: int,
    child_id: str,
    payload: str,
) -> Optional[Document]:
    """
    overwrite payload of the {id: child_id} element inside children[level].
    no row matches (None) when the doc is gone or the element is not in it.
    """
    query = sql.SQL(
        """
        UPDATE {}
        SET doc = jsonb_set(
            doc,
            %(path)s::text[],
            (
                SELECT jsonb_agg(
                    CASE WHEN e ->> 'id' = %(child_id)s
                         THEN jsonb_set(e, ARRAY['payload'], %(payload)s::jsonb)
                         ELSE e
                    END
                    ORDER BY pos
                )
                FROM jsonb_array_elements(doc #> %(path)s::text[]) WITH ORDINALITY AS t(e, pos)
            )
        )
        WHERE id = %(key)s
          AND doc #> %(path)s::text[] @> jsonb_build_array(jsonb_build_object('id', %(child_id)s::text))
        RETURNING doc
        """
    ).format(sql.Identifier(table))
    async with conn.cursor() as cur:
        await cur.execute(
            query,
            {
                "path": _children_path(level),
                "child_id": child_id,
                "payload": Jsonb(payload),
                "key": key,
            },
        )
        row = await cur.fetchone()
        return row[0] if row else None


async def pull_child(
    conn: AsyncConnection,
    table: str,
    key: str,
    level: int,
    child_id: str,
) -> bool:
    """
    remove only the {id: child_id} element from children[level].
    returns True if an element was removed.
    """
    query = sql.SQL(
        """
        UPDATE {}
        SET doc = jsonb_set(
            doc,
            %(path)s::text[],
            (
                SELECT COALESCE(jsonb_agg(e ORDER BY pos), '[]'::jsonb)
                FROM jsonb_array_elements(doc #> %(path)s::text[]) WITH ORDINALITY AS t(e, pos)
                WHERE e ->> 'id' IS DISTINCT FROM %(child_id)s
            )
        )
        WHERE id = %(key)s
          AND doc #> %(path)s::text[] @> jsonb_build_array(jsonb_build_object('id', %(child_id)s::text))
        """
    ).format(sql.Identifier(table))
    async with conn.cursor() as cur:
        await cur.execute(
            query,
            {"path": _children_path(level), "child_id": child_id, "key": key},
        )
        return cur.rowcount > 0


async def delete_document(conn: AsyncConnection, table: str, key: str) -> Optional[Document]:
    async with conn.cursor() as cur:
        await cur.execute(
            sql.SQL("DELETE FROM {} WHERE id = %s RETURNING doc").format(sql.Identifier(table)),
            (key,),
        )
        row = await cur.fetchone()
        return row[0] if row else None
