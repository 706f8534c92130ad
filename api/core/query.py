"""
Fluent SQL builder for single-table CRUD.

    rows = await (
        QueryBuilder("users", ctx.connection)
        .select()
        .where({"username": "a"})
        .limit(1)
        .execute()
    )

Every value is bound as a `?` parameter; only identifiers and LIMIT/OFFSET
integers end up in the SQL text. WHERE groups (equality, IN, LIKE) are joined
with AND in that fixed order. There is no OR or nesting; use
`Connection.execute_query` with hand-written SQL for those.

The builder state is consumed by `execute()` and reset afterwards, whether
the query succeeded or not.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .db import Connection
from .errors import ConnectionStateError, DangerousQueryError, InvalidQueryError

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_COLUMN_RE = re.compile(rf"^{_NAME}$")
_QUALIFIED_RE = re.compile(rf"^(\*|{_NAME}(\.({_NAME}|\*))?)$")
_PROJECTION_RE = re.compile(rf"^(\*|{_NAME}(\.({_NAME}|\*))?)(\s+AS\s+({_NAME}))?$", re.IGNORECASE)

JOIN_KINDS = frozenset({"INNER", "LEFT", "RIGHT", "FULL", "CROSS"})
DIRECTIONS = frozenset({"ASC", "DESC"})
DEFAULT_ORDER_COLUMN = "created_at"
DEFAULT_DIRECTION = "DESC"


def _column(name: str) -> str:
    if not isinstance(name, str) or not _COLUMN_RE.match(name):
        raise InvalidQueryError(f"Invalid column name {name!r}.")
    return name


def _identifier(name: str) -> str:
    if not isinstance(name, str) or not _QUALIFIED_RE.match(name):
        raise InvalidQueryError(f"Invalid identifier {name!r}.")
    return name


def _projected(table: str, column: str) -> str:
    """
    `col`, `col AS alias` or `other.col [AS alias]`; bare names get `table.`.
    """
    match = _PROJECTION_RE.match(column) if isinstance(column, str) else None
    if match is None:
        raise InvalidQueryError(f"Invalid column {column!r}.")
    name, alias = match.group(1), match.group(5)
    if "." not in name:
        name = f"{table}.{name}"
    return f"{name} AS {alias}" if alias else name


def _row_count(value: Any, what: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQueryError(f"{what} must be a non-negative integer, got {value!r}.")
    return value


@dataclass
class JoinSpec:
    kind: str
    table: str
    condition: str | None


@dataclass
class QueryDescriptor:
    kind: str | None = None
    projection: list[str] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    # Flattened insert values, or update values in column order.
    values: list[Any] = field(default_factory=list)
    where: dict[str, Any] = field(default_factory=dict)
    where_in: list[tuple[str, list[Any]]] = field(default_factory=list)
    search: dict[str, Any] = field(default_factory=dict)
    joins: list[JoinSpec] = field(default_factory=list)
    order_by: str | None = None
    direction: str | None = None
    limit: int | None = None
    offset: int | None = None
    returning: list[str] = field(default_factory=list)


class QueryBuilder:
    def __init__(self, table: str, connection: Connection | None = None) -> None:
        self.table = _column(table)
        self.connection = connection
        self.query = QueryDescriptor()

    def reset(self) -> None:
        self.query = QueryDescriptor()

    def _qualify(self, column: str) -> str:
        column = _identifier(column)
        return column if "." in column else f"{self.table}.{column}"

    def _set_kind(self, kind: str) -> None:
        if self.query.kind not in (None, kind):
            raise InvalidQueryError(f"Query is already a {self.query.kind}; cannot turn it into a {kind}.")
        self.query.kind = kind

    # -- operations -----------------------------------------------------------

    def select(self, columns: Sequence[str] = ("*",)) -> QueryBuilder:
        self._set_kind("select")
        if isinstance(columns, str):
            columns = [columns]
        self.query.projection.extend(_projected(self.table, column) for column in columns)
        return self

    def insert(self, data: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> QueryBuilder:
        """
        Insert one row (a mapping) or many (a sequence of mappings).

        All rows must have the same keys. Values are stored in the first row's
        column order so each VALUES tuple lines up with the column list.
        """
        if isinstance(data, Mapping):
            rows: list[Any] = [data]
        elif isinstance(data, Sequence) and not isinstance(data, (str, bytes)):
            rows = list(data)
        else:
            raise InvalidQueryError("Invalid data type for insert.")
        if not rows:
            raise InvalidQueryError("Insert needs at least one row.")
        if not all(isinstance(row, Mapping) for row in rows):
            raise InvalidQueryError("Every insert row must be a mapping.")

        columns = [_column(key) for key in rows[0]]
        if not columns:
            raise InvalidQueryError("Insert rows must have at least one column.")
        expected = set(columns)
        for position, row in enumerate(rows[1:], start=1):
            if set(row) != expected:
                raise InvalidQueryError(
                    f"Insert row {position} has keys {sorted(row)}; expected {sorted(expected)}."
                )

        self._set_kind("insert")
        self.query.columns = columns
        self.query.values = [row[column] for row in rows for column in columns]
        return self

    def update(self, data: Mapping[str, Any]) -> QueryBuilder:
        if not isinstance(data, Mapping) or not data:
            raise InvalidQueryError("Update needs a non-empty mapping of column values.")
        self._set_kind("update")
        self.query.columns = [_column(key) for key in data]
        self.query.values = list(data.values())
        return self

    def delete(self) -> QueryBuilder:
        self._set_kind("delete")
        return self

    def where(self, conditions: Mapping[str, Any]) -> QueryBuilder:
        """
        Equality predicates. Later calls overwrite the same column. A None
        value renders as IS NULL.
        """
        for column in conditions:
            _identifier(column)
        self.query.where.update(conditions)
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> QueryBuilder:
        values = list(values)
        if not values:
            raise InvalidQueryError(f"where_in({column!r}) needs at least one value.")
        self.query.where_in.append((self._qualify(column), values))
        return self

    def search(self, conditions: Mapping[str, Any]) -> QueryBuilder:
        """
        LIKE predicates. Values must already contain their wildcards.
        """
        for column in conditions:
            _identifier(column)
        self.query.search.update(conditions)
        return self

    def join(
        self,
        kind: str,
        table: str,
        condition: str | None,
        columns: Sequence[str] = ("*",),
    ) -> QueryBuilder:
        kind = (kind or "").strip().upper()
        if kind not in JOIN_KINDS:
            raise InvalidQueryError(f"Unsupported join type {kind!r}.")
        table = _column(table)
        if kind != "CROSS" and not (condition or "").strip():
            raise InvalidQueryError(f"{kind} JOIN {table} needs a condition.")
        self.query.joins.append(JoinSpec(kind=kind, table=table, condition=condition if kind != "CROSS" else None))
        if isinstance(columns, str):
            columns = [columns]
        self.query.projection.extend(_projected(table, column) for column in columns)
        return self

    def order_by(self, column: str = DEFAULT_ORDER_COLUMN, direction: str = DEFAULT_DIRECTION) -> QueryBuilder:
        direction = (direction or "").strip().upper()
        if direction not in DIRECTIONS:
            raise InvalidQueryError(f"Invalid order direction {direction!r}.")
        self.query.order_by = self._qualify(column)
        self.query.direction = direction
        return self

    def limit(self, limit: int | None) -> QueryBuilder:
        self.query.limit = _row_count(limit, "LIMIT")
        return self

    def offset(self, offset: int | None) -> QueryBuilder:
        self.query.offset = _row_count(offset, "OFFSET")
        return self

    def row_number(self) -> QueryBuilder:
        """
        Project `sr`, the row's position under the current ordering.
        """
        column = self.query.order_by or self._qualify(DEFAULT_ORDER_COLUMN)
        direction = self.query.direction or DEFAULT_DIRECTION
        self.query.projection.append(f"ROW_NUMBER() OVER (ORDER BY {column} {direction}) AS sr")
        return self

    def total(self) -> QueryBuilder:
        """
        Project `total`, the row count before LIMIT/OFFSET.
        """
        self.query.projection.append("COUNT(*) OVER() AS total")
        return self

    def returning(self, columns: Sequence[str] = ("*",)) -> QueryBuilder:
        if isinstance(columns, str):
            columns = [columns]
        self.query.returning.extend(_identifier(column) for column in columns)
        return self

    # -- assembly -------------------------------------------------------------

    def _where_clause(self) -> tuple[str, list[Any]]:
        groups: list[str] = []
        params: list[Any] = []

        if self.query.where:
            parts = []
            for column, value in self.query.where.items():
                if value is None:
                    parts.append(f"{self._qualify(column)} IS NULL")
                else:
                    parts.append(f"{self._qualify(column)} = ?")
                    params.append(value)
            groups.append(" AND ".join(parts))

        if self.query.where_in:
            parts = []
            for column, values in self.query.where_in:
                parts.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            groups.append(" AND ".join(parts))

        if self.query.search:
            groups.append(" AND ".join(f"{self._qualify(column)} LIKE ?" for column in self.query.search))
            params.extend(self.query.search.values())

        if not groups:
            return "", []
        return " WHERE " + " AND ".join(groups), params

    def _returning_clause(self) -> str:
        if not self.query.returning:
            return ""
        return " RETURNING " + ", ".join(self.query.returning)

    def _select_sql(self) -> tuple[str, list[Any]]:
        sql = f"SELECT {', '.join(self.query.projection)} FROM {self.table}"
        for join in self.query.joins:
            sql += f" {join.kind} JOIN {join.table}"
            if join.condition:
                sql += f" ON {join.condition}"
        where, params = self._where_clause()
        sql += where
        if self.query.order_by:
            sql += f" ORDER BY {self.query.order_by} {self.query.direction}"
        if self.query.limit is not None:
            sql += f" LIMIT {self.query.limit}"
        if self.query.offset is not None:
            sql += f" OFFSET {self.query.offset}"
        return sql + ";", params

    def _insert_sql(self) -> tuple[str, list[Any]]:
        width = len(self.query.columns)
        values = self.query.values
        chunks = [values[start:start + width] for start in range(0, len(values), width)]
        tuples = ", ".join("(" + ", ".join("?" for _ in chunk) + ")" for chunk in chunks)
        sql = f"INSERT INTO {self.table} ({', '.join(self.query.columns)}) VALUES {tuples}"
        return sql + self._returning_clause() + ";", list(values)

    def _update_sql(self) -> tuple[str, list[Any]]:
        where, where_params = self._where_clause()
        if not where:
            raise DangerousQueryError(f"Refusing to UPDATE {self.table} without a WHERE clause.")
        assignments = ", ".join(f"{column} = ?" for column in self.query.columns)
        sql = f"UPDATE {self.table} SET {assignments}{where}"
        return sql + self._returning_clause() + ";", [*self.query.values, *where_params]

    def _delete_sql(self) -> tuple[str, list[Any]]:
        where, params = self._where_clause()
        if not where:
            raise DangerousQueryError(f"Refusing to DELETE FROM {self.table} without a WHERE clause.")
        return f"DELETE FROM {self.table}{where}" + self._returning_clause() + ";", params

    def to_sql(self) -> tuple[str, list[Any]]:
        """
        Render the current state as (sql, params) without executing it.
        """
        kind = self.query.kind
        if kind == "select":
            return self._select_sql()
        if kind == "insert":
            return self._insert_sql()
        if kind == "update":
            return self._update_sql()
        if kind == "delete":
            return self._delete_sql()
        raise InvalidQueryError("No query to execute; call select/insert/update/delete first.")

    async def execute(self) -> list[dict[str, Any]] | int:
        try:
            if self.connection is None:
                raise ConnectionStateError(f"QueryBuilder({self.table!r}) has no connection to execute on.")
            sql, params = self.to_sql()
            return await self.connection.execute_query(sql, params)
        finally:
            self.reset()
