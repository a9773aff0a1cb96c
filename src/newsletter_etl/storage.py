"""newsletter_etl.storage

Storage collaborator used by the migration engine.

The engine only needs four operations: lookup-by-key, ordered enumeration,
insert, and conflict-safe insert. Entities are addressed by table name and
predicates are plain equality mappings (a None value matches SQL NULL).

Implementations:
  - PostgresStorage — psycopg 3 connection; caller manages the transaction
  - InMemoryStorage — list-backed store with the same unique keys (tests)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from newsletter_etl.shared import CollaboratorError


Row = dict[str, Any]

# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

GROUPS = "newsletter_groups"
SUBSCRIBERS = "newsletter_subscribers"
TAGS = "tags"
CONTACTS = "contacts"
CONTACT_TAGS = "contact_tags"

# Enumeration order per entity. Legacy rows come back in insertion order.
ENTITY_ORDER: dict[str, tuple[str, ...]] = {
    GROUPS: ("id",),
    SUBSCRIBERS: ("id",),
    TAGS: ("id",),
    CONTACTS: ("id",),
    CONTACT_TAGS: ("contact_id", "tag_id"),
}

UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    TAGS: ("site_id", "name"),
    CONTACTS: ("site_id", "email"),
    CONTACT_TAGS: ("contact_id", "tag_id"),
}


def _check_entity(entity: str) -> None:
    if entity not in ENTITY_ORDER:
        raise ValueError(f"unknown entity {entity!r}")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Storage(Protocol):
    def find_one(self, entity: str, where: dict[str, Any]) -> Row | None:
        """Return the first matching row, or None."""
        ...

    def find_all(self, entity: str, where: dict[str, Any] | None = None) -> list[Row]:
        """Return all matching rows in the entity's enumeration order."""
        ...

    def insert(self, entity: str, values: dict[str, Any]) -> Row:
        """Insert a row and return it, including generated columns."""
        ...

    def insert_ignore_conflict(
        self,
        entity: str,
        values: dict[str, Any],
        conflict_key: Sequence[str],
    ) -> Row | None:
        """Insert unless conflict_key already exists. None means no-op."""
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _where_clause(where: dict[str, Any] | None) -> tuple[sql.Composable, list[Any]]:
    if not where:
        return sql.SQL(""), []
    clauses: list[sql.Composable] = []
    params: list[Any] = []
    for col, val in where.items():
        if val is None:
            clauses.append(sql.SQL("{} IS NULL").format(sql.Identifier(col)))
        else:
            clauses.append(sql.SQL("{} = %s").format(sql.Identifier(col)))
            params.append(val)
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


@dataclass
class PostgresStorage:
    """Storage backed by a psycopg connection. Caller manages transaction."""

    conn: psycopg.Connection

    def _select(
        self,
        entity: str,
        where: dict[str, Any] | None,
        limit: int | None = None,
    ) -> tuple[sql.Composable, list[Any]]:
        _check_entity(entity)
        where_sql, params = _where_clause(where)
        query = (
            sql.SQL("SELECT * FROM {}").format(sql.Identifier(entity))
            + where_sql
            + sql.SQL(" ORDER BY ")
            + sql.SQL(", ").join(sql.Identifier(c) for c in ENTITY_ORDER[entity])
        )
        if limit is not None:
            query += sql.SQL(" LIMIT {}").format(sql.Literal(limit))
        return query, params

    def _insert_sql(
        self,
        entity: str,
        values: dict[str, Any],
        conflict_key: Sequence[str] | None = None,
    ) -> sql.Composable:
        _check_entity(entity)
        cols = list(values.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(entity),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join([sql.Placeholder()] * len(cols)),
        )
        if conflict_key:
            query += sql.SQL(" ON CONFLICT ({}) DO NOTHING").format(
                sql.SQL(", ").join(sql.Identifier(c) for c in conflict_key)
            )
        return query + sql.SQL(" RETURNING *")

    def _fetch(self, query: sql.Composable, params: Sequence[Any], many: bool) -> Any:
        try:
            with self.conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                return cur.fetchall() if many else cur.fetchone()
        except psycopg.Error as exc:
            raise CollaboratorError(f"{type(exc).__name__}: {exc}") from exc

    def find_one(self, entity: str, where: dict[str, Any]) -> Row | None:
        query, params = self._select(entity, where, limit=1)
        return self._fetch(query, params, many=False)

    def find_all(self, entity: str, where: dict[str, Any] | None = None) -> list[Row]:
        query, params = self._select(entity, where)
        return self._fetch(query, params, many=True)

    def insert(self, entity: str, values: dict[str, Any]) -> Row:
        query = self._insert_sql(entity, values)
        return self._fetch(query, list(values.values()), many=False)

    def insert_ignore_conflict(
        self,
        entity: str,
        values: dict[str, Any],
        conflict_key: Sequence[str],
    ) -> Row | None:
        query = self._insert_sql(entity, values, conflict_key)
        return self._fetch(query, list(values.values()), many=False)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

def _matches(row: Row, where: dict[str, Any] | None) -> bool:
    return all(row.get(col) == val for col, val in (where or {}).items())


@dataclass
class InMemoryStorage:
    """List-backed storage enforcing UNIQUE_KEYS (used in unit tests)."""

    tables: dict[str, list[Row]] = field(
        default_factory=lambda: {entity: [] for entity in ENTITY_ORDER}
    )
    _next_id: dict[str, int] = field(default_factory=dict, repr=False)

    def find_one(self, entity: str, where: dict[str, Any]) -> Row | None:
        rows = self.find_all(entity, where)
        return rows[0] if rows else None

    def find_all(self, entity: str, where: dict[str, Any] | None = None) -> list[Row]:
        _check_entity(entity)
        order = ENTITY_ORDER[entity]
        rows = [r for r in self.tables[entity] if _matches(r, where)]
        rows.sort(key=lambda r: tuple(r[c] for c in order))
        return [dict(r) for r in rows]

    def insert(self, entity: str, values: dict[str, Any]) -> Row:
        _check_entity(entity)
        key = UNIQUE_KEYS.get(entity)
        if key and self._conflicts(entity, values, key):
            raise CollaboratorError(
                f"unique violation on {entity} {tuple(values.get(c) for c in key)!r}"
            )
        row = dict(values)
        if ENTITY_ORDER[entity] == ("id",) and row.get("id") is None:
            row["id"] = self._next_id.get(entity, 0) + 1
        if "id" in row:
            self._next_id[entity] = max(self._next_id.get(entity, 0), row["id"])
        self.tables[entity].append(row)
        return dict(row)

    def insert_ignore_conflict(
        self,
        entity: str,
        values: dict[str, Any],
        conflict_key: Sequence[str],
    ) -> Row | None:
        _check_entity(entity)
        if self._conflicts(entity, values, conflict_key):
            return None
        return self.insert(entity, values)

    def _conflicts(
        self,
        entity: str,
        values: dict[str, Any],
        key: Sequence[str],
    ) -> bool:
        probe = {c: values.get(c) for c in key}
        return any(_matches(r, probe) for r in self.tables[entity])

    def count(self, entity: str) -> int:
        return len(self.tables[entity])
