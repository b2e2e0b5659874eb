"""
Transaction store.

Holds normalized point-of-sale transactions (one row per ticket plus its
line items) and answers the aggregation queries the engines need. Every
aggregation is a ``GROUP BY`` in SQLite read with ``pandas.read_sql_query``;
nothing here iterates raw transaction rows in Python.

Weekdays follow Python's convention (0=Monday). SQLite's ``%w`` is
0=Sunday, hence the ``(%w + 6) % 7`` shift in the queries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from .db_adapter import get_connection, query_deadline

logger = logging.getLogger(__name__)

WEEKDAY_SQL = "((CAST(strftime('%w', date) AS INTEGER) + 6) % 7)"


@dataclass
class TransactionItem:
    name: str
    category: str = "other"
    quantity: int = 1
    price: float = 0.0


@dataclass
class Transaction:
    id: str
    entity_id: str
    timestamp: datetime
    total: float
    employee_id: Optional[str] = None
    customer_id: Optional[str] = None
    items: List[TransactionItem] = field(default_factory=list)


class TransactionStore:
    """SQLite-backed transaction storage with aggregation queries."""

    def __init__(self, db_path: str, query_timeout: Optional[float] = None):
        self.db_path = db_path
        self.query_timeout = query_timeout
        self._init_schema()

    def _init_schema(self):
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    entity_id TEXT NOT NULL,
                    ts TEXT NOT NULL,
                    date TEXT NOT NULL,
                    hour INTEGER NOT NULL,
                    total REAL NOT NULL,
                    employee_id TEXT,
                    customer_id TEXT
                );

                CREATE TABLE IF NOT EXISTS transaction_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    item_name TEXT NOT NULL,
                    category TEXT,
                    quantity INTEGER DEFAULT 1,
                    price REAL DEFAULT 0,
                    FOREIGN KEY (transaction_id) REFERENCES transactions(id)
                );

                CREATE INDEX IF NOT EXISTS idx_txn_entity_date ON transactions(entity_id, date);
                CREATE INDEX IF NOT EXISTS idx_items_txn ON transaction_items(transaction_id);
                CREATE INDEX IF NOT EXISTS idx_items_entity ON transaction_items(entity_id);
            """)
            conn.commit()
        finally:
            conn.close()

    def insert(self, transactions: Iterable[Transaction]) -> int:
        """Insert (or replace) transactions and their line items. Returns count inserted."""
        txn_rows = []
        item_rows = []
        for t in transactions:
            txn_rows.append((
                t.id, t.entity_id, t.timestamp.isoformat(), t.timestamp.date().isoformat(),
                t.timestamp.hour, t.total, t.employee_id, t.customer_id,
            ))
            for item in t.items:
                item_rows.append((t.id, t.entity_id, item.name, item.category, item.quantity, item.price))

        conn = get_connection(self.db_path)
        try:
            conn.executemany("""
                INSERT OR REPLACE INTO transactions
                (id, entity_id, ts, date, hour, total, employee_id, customer_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, txn_rows)
            conn.executemany(
                "DELETE FROM transaction_items WHERE transaction_id = ?",
                [(r[0],) for r in txn_rows],
            )
            conn.executemany("""
                INSERT INTO transaction_items
                (transaction_id, entity_id, item_name, category, quantity, price)
                VALUES (?, ?, ?, ?, ?, ?)
            """, item_rows)
            conn.commit()
        finally:
            conn.close()

        logger.debug(f"Inserted {len(txn_rows)} transactions ({len(item_rows)} items)")
        return len(txn_rows)

    def _frame(self, sql: str, params: tuple, what: str) -> pd.DataFrame:
        conn = get_connection(self.db_path)
        try:
            with query_deadline(conn, self.query_timeout, what):
                return pd.read_sql_query(sql, conn, params=params)
        finally:
            conn.close()

    # =========================================================================
    # Daily / hourly
    # =========================================================================

    def daily_aggregates(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """Columns: date, revenue, transactions (only days with activity)."""
        return self._frame("""
            SELECT date, SUM(total) AS revenue, COUNT(*) AS transactions
            FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ?
            GROUP BY date
            ORDER BY date
        """, (entity_id, start.isoformat(), end.isoformat()), "daily aggregates")

    def hourly_by_date(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """Columns: date, hour, revenue, transactions."""
        return self._frame("""
            SELECT date, hour, SUM(total) AS revenue, COUNT(*) AS transactions
            FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ?
            GROUP BY date, hour
            ORDER BY date, hour
        """, (entity_id, start.isoformat(), end.isoformat()), "hourly aggregates")

    def weekday_revenue(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """Columns: weekday, revenue, active_days."""
        return self._frame(f"""
            SELECT {WEEKDAY_SQL} AS weekday,
                   SUM(total) AS revenue,
                   COUNT(DISTINCT date) AS active_days
            FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ?
            GROUP BY weekday
            ORDER BY weekday
        """, (entity_id, start.isoformat(), end.isoformat()), "weekday revenue")

    def first_activity(self, entity_id: str, start: date, end: date) -> Optional[date]:
        df = self._frame("""
            SELECT MIN(date) AS first_date FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ?
        """, (entity_id, start.isoformat(), end.isoformat()), "first activity")
        value = df["first_date"].iloc[0] if len(df) else None
        return date.fromisoformat(value) if value else None

    def hourly_profile(self, entity_id: str, start: date, end: date, weekday: Optional[int] = None) -> pd.DataFrame:
        """Columns: hour, revenue, transactions, days (total over the range, optionally one weekday)."""
        weekday_clause = f"AND {WEEKDAY_SQL} = ?" if weekday is not None else ""
        params = (entity_id, start.isoformat(), end.isoformat())
        if weekday is not None:
            params = params + (weekday,)
        return self._frame(f"""
            SELECT hour, SUM(total) AS revenue, COUNT(*) AS transactions,
                   COUNT(DISTINCT date) AS days
            FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ? {weekday_clause}
            GROUP BY hour
            ORDER BY hour
        """, params, "hourly profile")

    def active_day_count(self, entity_id: str, start: date, end: date) -> int:
        df = self._frame("""
            SELECT COUNT(DISTINCT date) AS days FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ?
        """, (entity_id, start.isoformat(), end.isoformat()), "active days")
        return int(df["days"].iloc[0] or 0)

    # =========================================================================
    # Employees / customers
    # =========================================================================

    def employee_stats(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """Columns: employee_id, transactions, revenue, avg_ticket, shifts."""
        return self._frame("""
            SELECT employee_id,
                   COUNT(*) AS transactions,
                   SUM(total) AS revenue,
                   AVG(total) AS avg_ticket,
                   COUNT(DISTINCT date) AS shifts
            FROM transactions
            WHERE entity_id = ? AND date BETWEEN ? AND ? AND employee_id IS NOT NULL
            GROUP BY employee_id
            ORDER BY revenue DESC, employee_id
        """, (entity_id, start.isoformat(), end.isoformat()), "employee stats")

    def customer_segments(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """
        Columns: segment, customers, transactions, revenue, avg_ticket.

        A customer is 'returning' when they have more than one transaction in
        the range, otherwise 'new'.
        """
        return self._frame("""
            WITH per_customer AS (
                SELECT customer_id, COUNT(*) AS visits, SUM(total) AS revenue
                FROM transactions
                WHERE entity_id = ? AND date BETWEEN ? AND ? AND customer_id IS NOT NULL
                GROUP BY customer_id
            )
            SELECT CASE WHEN visits > 1 THEN 'returning' ELSE 'new' END AS segment,
                   COUNT(*) AS customers,
                   SUM(visits) AS transactions,
                   SUM(revenue) AS revenue,
                   SUM(revenue) / SUM(visits) AS avg_ticket
            FROM per_customer
            GROUP BY segment
            ORDER BY segment
        """, (entity_id, start.isoformat(), end.isoformat()), "customer segments")

    # =========================================================================
    # Items
    # =========================================================================

    def item_pairs(self, entity_id: str, start: date, end: date, min_count: int = 5) -> pd.DataFrame:
        """Columns: item_a, item_b, together (co-occurring item pairs)."""
        return self._frame("""
            WITH txn_items AS (
                SELECT DISTINCT i.transaction_id, i.item_name
                FROM transaction_items i
                JOIN transactions t ON t.id = i.transaction_id
                WHERE t.entity_id = ? AND t.date BETWEEN ? AND ?
            )
            SELECT a.item_name AS item_a, b.item_name AS item_b, COUNT(*) AS together
            FROM txn_items a
            JOIN txn_items b
              ON a.transaction_id = b.transaction_id AND a.item_name < b.item_name
            GROUP BY a.item_name, b.item_name
            HAVING COUNT(*) >= ?
            ORDER BY together DESC, item_a, item_b
        """, (entity_id, start.isoformat(), end.isoformat(), min_count), "item pairs")

    def item_attach_rates(self, entity_id: str, start: date, end: date) -> pd.DataFrame:
        """Columns: item_name, category, txn_count, attach_rate, revenue."""
        return self._frame("""
            WITH total AS (
                SELECT COUNT(*) AS n FROM transactions
                WHERE entity_id = ? AND date BETWEEN ? AND ?
            )
            SELECT i.item_name,
                   COALESCE(i.category, 'other') AS category,
                   COUNT(DISTINCT i.transaction_id) AS txn_count,
                   CAST(COUNT(DISTINCT i.transaction_id) AS REAL) / (SELECT n FROM total) AS attach_rate,
                   SUM(i.quantity * i.price) AS revenue
            FROM transaction_items i
            JOIN transactions t ON t.id = i.transaction_id
            WHERE t.entity_id = ? AND t.date BETWEEN ? AND ?
            GROUP BY i.item_name, category
            ORDER BY i.item_name
        """, (
            entity_id, start.isoformat(), end.isoformat(),
            entity_id, start.isoformat(), end.isoformat(),
        ), "item attach rates")

    def daily_item_quantities(
        self,
        entity_id: str,
        start: date,
        end: date,
        top_n: int = 10,
        items: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Daily quantity for the ``top_n`` best-selling items (or exactly
        ``items`` when given), pivoted to one row per date and one column
        per item (missing days are 0).
        """
        if items is not None:
            names = sorted(set(items))
            if not names:
                return pd.DataFrame()
            placeholders = ",".join("?" for _ in names)
            df = self._frame(f"""
                SELECT t.date, i.item_name, SUM(i.quantity) AS quantity
                FROM transaction_items i
                JOIN transactions t ON t.id = i.transaction_id
                WHERE t.entity_id = ? AND t.date BETWEEN ? AND ?
                  AND i.item_name IN ({placeholders})
                GROUP BY t.date, i.item_name
            """, (entity_id, start.isoformat(), end.isoformat(), *names), "item quantities")
        else:
            df = self._top_item_quantities(entity_id, start, end, top_n)

        if df.empty:
            return pd.DataFrame()
        return df.pivot_table(index="date", columns="item_name", values="quantity", fill_value=0, aggfunc="sum")

    def _top_item_quantities(self, entity_id: str, start: date, end: date, top_n: int) -> pd.DataFrame:
        return self._frame("""
            WITH top_items AS (
                SELECT i.item_name
                FROM transaction_items i
                JOIN transactions t ON t.id = i.transaction_id
                WHERE t.entity_id = ? AND t.date BETWEEN ? AND ?
                GROUP BY i.item_name
                ORDER BY SUM(i.quantity) DESC, i.item_name
                LIMIT ?
            )
            SELECT t.date, i.item_name, SUM(i.quantity) AS quantity
            FROM transaction_items i
            JOIN transactions t ON t.id = i.transaction_id
            WHERE t.entity_id = ? AND t.date BETWEEN ? AND ?
              AND i.item_name IN (SELECT item_name FROM top_items)
            GROUP BY t.date, i.item_name
        """, (
            entity_id, start.isoformat(), end.isoformat(), top_n,
            entity_id, start.isoformat(), end.isoformat(),
        ), "daily item quantities")

    def entity_ids(self) -> List[str]:
        df = self._frame("SELECT DISTINCT entity_id FROM transactions ORDER BY entity_id", (), "entity ids")
        return df["entity_id"].tolist()
