"""members_etl.store

PostgreSQL storage for member records.

``MemberDatabase`` is the process-wide handle: it is created once, passed
explicitly to whoever needs storage, connects lazily and idempotently, and
is closed at shutdown. ``PostgresMemberStore`` wraps one connection and
returns rows as plain dicts.

Column names are checked against ``MEMBER_COLUMNS`` before being composed
into SQL; values always travel as bound parameters.
"""

from __future__ import annotations

import logging
import os
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

log = logging.getLogger(__name__)

DSN_ENV_VARS = ("MEMBERS_DB_DSN", "DATABASE_URL")

MEMBER_COLUMNS = frozenset({
    "id",
    "full_name",
    "membership_id",
    "gender",
    "status",
    "member_type",
    "phone",
    "email",
    "address",
    "role",
    "bio",
    "pdf_url",
    "photo_url",
    "occupation",
    "education_level",
    "financial_commitment",
    "cin",
    "neighborhood",
    "member_of_regional_bodies",
    "member_of_regional_bodies_detail",
    "assigned_mission",
    "assigned_mission_detail",
    "previous_party_experiences",
    "joined_at",
    "created_at",
    "updated_at",
})

# Columns callers may write; id and timestamps are owned by the database.
WRITABLE_COLUMNS = MEMBER_COLUMNS - {"id", "created_at", "updated_at"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(RuntimeError):
    """Raised when no database DSN is configured."""


class UnknownColumnError(ValueError):
    """Raised when a caller names a column outside the member schema."""


# ---------------------------------------------------------------------------
# Connection handle
# ---------------------------------------------------------------------------

class MemberDatabase:
    """Lazily-established, reusable connection to the member database."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn: psycopg.Connection | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MemberDatabase:
        env = os.environ if environ is None else environ
        for name in DSN_ENV_VARS:
            dsn = env.get(name)
            if dsn:
                return cls(dsn)
        raise ConfigError(f"Missing database DSN; set one of {', '.join(DSN_ENV_VARS)}")

    def connect(self) -> psycopg.Connection:
        """Return the open connection, opening it on first use."""
        if self._conn is None or self._conn.closed:
            log.info("Connecting to member database")
            self._conn = psycopg.connect(self._dsn, autocommit=False)
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def __enter__(self) -> MemberDatabase:
        self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class MemberStore(Protocol):
    def transaction(self) -> AbstractContextManager[Any]: ...

    def find_one(
        self, column: str, value: Any, *, case_insensitive: bool = False
    ) -> dict[str, Any] | None: ...

    def find_by_id(self, member_id: int) -> dict[str, Any] | None: ...

    def create(self, values: Mapping[str, Any]) -> dict[str, Any]: ...

    def update(self, member_id: int, values: Mapping[str, Any]) -> dict[str, Any] | None: ...

    def delete(self, member_id: int) -> dict[str, Any] | None: ...

    def count(
        self,
        filters: Mapping[str, Any] | None = None,
        search: str | None = None,
        joined_before: datetime | None = None,
    ) -> int: ...

    def find_many(
        self,
        filters: Mapping[str, Any] | None = None,
        search: str | None = None,
        sort: str = "full_name",
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def delete_many(
        self,
        filters: Mapping[str, Any] | None = None,
        joined_before: datetime | None = None,
    ) -> int: ...

    def clear_blank_cin(self) -> int: ...

    def find_linked_user(self, member_id: int) -> dict[str, Any] | None: ...

    def set_user_role(self, user_id: int, role: str) -> dict[str, Any] | None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def check_columns(columns: Iterable[str], allowed: frozenset[str] = MEMBER_COLUMNS) -> None:
    unknown = sorted(set(columns) - allowed)
    if unknown:
        raise UnknownColumnError(f"Unknown member column(s): {unknown}")


def _where(
    filters: Mapping[str, Any] | None,
    search: str | None,
    joined_before: datetime | None,
) -> tuple[sql.Composable, list[Any]]:
    clauses: list[sql.Composable] = []
    params: list[Any] = []
    for column, value in (filters or {}).items():
        check_columns([column])
        clauses.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
        params.append(value)
    if search:
        clauses.append(sql.SQL("strpos(lower(full_name), lower(%s)) > 0"))
        params.append(search)
    if joined_before is not None:
        clauses.append(sql.SQL("joined_at < %s"))
        params.append(joined_before)
    if not clauses:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

class PostgresMemberStore:
    """Member storage on a psycopg connection. Caller manages commit."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    def transaction(self) -> AbstractContextManager[Any]:
        """Savepoint scoping one unit of work.

        Opens a transaction of its own when none is in progress.
        """
        return self._conn.transaction()

    def _fetchone(self, query: sql.Composable | str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, list(params))
            return cur.fetchone()

    def _fetchall(self, query: sql.Composable | str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, list(params))
            return cur.fetchall()

    # -- lookups ------------------------------------------------------------

    def find_one(
        self, column: str, value: Any, *, case_insensitive: bool = False
    ) -> dict[str, Any] | None:
        check_columns([column])
        if case_insensitive:
            query = sql.SQL(
                "SELECT * FROM member WHERE lower({col}) = lower(%s) ORDER BY id ASC LIMIT 1"
            ).format(col=sql.Identifier(column))
        else:
            query = sql.SQL(
                "SELECT * FROM member WHERE {col} = %s ORDER BY id ASC LIMIT 1"
            ).format(col=sql.Identifier(column))
        return self._fetchone(query, [value])

    def find_by_id(self, member_id: int) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM member WHERE id = %s", [member_id])

    def count(
        self,
        filters: Mapping[str, Any] | None = None,
        search: str | None = None,
        joined_before: datetime | None = None,
    ) -> int:
        where, params = _where(filters, search, joined_before)
        row = self._fetchone(sql.SQL("SELECT count(*) AS n FROM member") + where, params)
        return int(row["n"]) if row else 0

    def find_many(
        self,
        filters: Mapping[str, Any] | None = None,
        search: str | None = None,
        sort: str = "full_name",
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        check_columns([sort])
        where, params = _where(filters, search, None)
        query = (
            sql.SQL("SELECT * FROM member")
            + where
            + sql.SQL(" ORDER BY {} {} NULLS LAST, id ASC").format(
                sql.Identifier(sort), sql.SQL("DESC" if descending else "ASC")
            )
            + sql.SQL(" OFFSET %s")
        )
        params.append(offset)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)
        return self._fetchall(query, params)

    # -- writes -------------------------------------------------------------

    def create(self, values: Mapping[str, Any]) -> dict[str, Any]:
        check_columns(values, WRITABLE_COLUMNS)
        if not values:
            row = self._fetchone("INSERT INTO member DEFAULT VALUES RETURNING *")
        else:
            columns = list(values)
            query = sql.SQL("INSERT INTO member ({cols}) VALUES ({vals}) RETURNING *").format(
                cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            )
            row = self._fetchone(query, [values[c] for c in columns])
        assert row is not None
        return row

    def update(self, member_id: int, values: Mapping[str, Any]) -> dict[str, Any] | None:
        check_columns(values, WRITABLE_COLUMNS)
        columns = list(values)
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
        ] + [sql.SQL("updated_at = now()")]
        query = sql.SQL("UPDATE member SET {sets} WHERE id = %s RETURNING *").format(
            sets=sql.SQL(", ").join(assignments),
        )
        return self._fetchone(query, [values[c] for c in columns] + [member_id])

    def delete(self, member_id: int) -> dict[str, Any] | None:
        return self._fetchone("DELETE FROM member WHERE id = %s RETURNING *", [member_id])

    def delete_many(
        self,
        filters: Mapping[str, Any] | None = None,
        joined_before: datetime | None = None,
    ) -> int:
        where, params = _where(filters, None, joined_before)
        with self._conn.cursor() as cur:
            cur.execute(sql.SQL("DELETE FROM member") + where, params)
            return cur.rowcount

    def clear_blank_cin(self) -> int:
        """Null out national IDs stored as blank strings by older imports."""
        with self._conn.cursor() as cur:
            cur.execute("UPDATE member SET cin = NULL WHERE btrim(cin) = ''")
            return cur.rowcount

    # -- linked users -------------------------------------------------------

    def find_linked_user(self, member_id: int) -> dict[str, Any] | None:
        return self._fetchone(
            "SELECT * FROM app_user WHERE member_id = %s ORDER BY id ASC LIMIT 1",
            [member_id],
        )

    def set_user_role(self, user_id: int, role: str) -> dict[str, Any] | None:
        return self._fetchone(
            "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
            [role, user_id],
        )
