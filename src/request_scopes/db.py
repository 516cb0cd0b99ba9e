from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS trees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    color TEXT NOT NULL,
    height INTEGER NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    root_type TEXT NOT NULL DEFAULT '',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

SEED_TREES = (
    ("Oak", "green", 25, "forest", "taproot"),
    ("Birch", "white", 18, "forest", "fibrous"),
    ("Maple", "red", 30, "garden", "fibrous"),
    ("Bonsai", "green", 1, "indoor", ""),
    ("Cherry", "pink", 8, "garden", "taproot"),
)

TALL_TREE_HEIGHT = 20
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
ORDERABLE_FIELDS = {"id", "name", "color", "height", "category"}


class InvalidQueryError(ValueError):
    """Raised when a query scope receives a value it cannot use."""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_trees_schema(conn)
        seed_default_trees(conn)
    conn.close()


def migrate_trees_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(trees)").fetchall()}
    if "root_type" not in columns:
        conn.execute("ALTER TABLE trees ADD COLUMN root_type TEXT NOT NULL DEFAULT ''")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trees_color_height ON trees(color, height)")


def seed_default_trees(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT id FROM trees LIMIT 1").fetchone()
    if row is not None:
        return
    conn.executemany(
        "INSERT INTO trees(name, color, height, category, root_type) VALUES (?, ?, ?, ?, ?)",
        SEED_TREES,
    )


@dataclass(slots=True, frozen=True)
class TreeQuery:
    """Chainable query over the trees table.

    Every scope method returns a new query; nothing touches the database
    until ``all``, ``count`` or ``find`` is called.
    """

    db_path: str
    clauses: tuple[str, ...] = ()
    bindings: tuple[Any, ...] = ()
    order: str = "id"
    limit: int | None = None
    offset: int = 0

    def where(self, clause: str, *bindings: Any) -> TreeQuery:
        return replace(self, clauses=(*self.clauses, clause), bindings=(*self.bindings, *bindings))

    def color(self, value: Any) -> TreeQuery:
        return self.where("color = ?", str(value))

    def only_tall(self) -> TreeQuery:
        return self.where("height >= ?", TALL_TREE_HEIGHT)

    def min_height(self, value: Any) -> TreeQuery:
        return self.where("height >= ?", _parse_int("min_height", value))

    def root_type(self, value: Any) -> TreeQuery:
        return self.where("root_type = ?", str(value))

    def categories(self, values: Sequence[Any]) -> TreeQuery:
        placeholders = ", ".join("?" for _ in values)
        return self.where(f"category IN ({placeholders})", *(str(value) for value in values))

    def paginate(self, page: Any, per_page: Any) -> TreeQuery:
        page_number = max(_parse_int("page", page) if page is not None else 1, 1)
        page_size = _parse_int("per_page", per_page) if per_page is not None else DEFAULT_PAGE_SIZE
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        return replace(self, limit=page_size, offset=(page_number - 1) * page_size)

    def order_by(self, field: Any) -> TreeQuery:
        name = str(field)
        if name not in ORDERABLE_FIELDS:
            raise InvalidQueryError(f"cannot order trees by: {name}")
        return replace(self, order=name)

    def all(self) -> list[dict[str, Any]]:
        sql = f"SELECT id, name, color, height, category, root_type FROM trees{self._where_sql()} ORDER BY {self.order}, id"
        bindings = list(self.bindings)
        if self.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            bindings.extend([self.limit, self.offset])
        conn = connect(self.db_path)
        try:
            return [dict(row) for row in conn.execute(sql, bindings).fetchall()]
        finally:
            conn.close()

    def count(self) -> int:
        conn = connect(self.db_path)
        try:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM trees{self._where_sql()}", self.bindings).fetchone()
        finally:
            conn.close()
        return int(row["total"])

    def find(self, tree_id: int) -> dict[str, Any] | None:
        scoped = self.where("id = ?", int(tree_id))
        rows = replace(scoped, limit=None, offset=0).all()
        return rows[0] if rows else None

    def _where_sql(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(f"({clause})" for clause in self.clauses)


def _parse_int(field: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidQueryError(f"{field} must be an integer") from None
