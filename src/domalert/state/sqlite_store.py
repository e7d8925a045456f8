from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime

from ..errors import SubscriptionExists
from ..models import Subscription, normalize_domain


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(slots=True)
class SqliteStateStore:
    """
    默认状态存储：SQLite

    表设计：
    - cursors：每个 cursor_key 的已处理最大 event_id（单调 upsert）
    - subscriptions：(subscriber_id, domain) 订阅关系，联合主键保证唯一
    - notify_failures：投递失败留痕（不做队列重试，但保证可追踪）
    """

    sqlite_path: str

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    cursor_key TEXT PRIMARY KEY,
                    cursor INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    subscriber_id TEXT NOT NULL,
                    domain TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (subscriber_id, domain)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_domain ON subscriptions(domain)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notify_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id INTEGER NOT NULL,
                    subscriber_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    error TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def get_cursor(self, cursor_key: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT cursor FROM cursors WHERE cursor_key = ?", (cursor_key,)).fetchone()
            if not row:
                return 0
            return int(row["cursor"])

    def advance_cursor(self, cursor_key: str, cursor: int) -> int:
        # 并发/重复调度下取 max，cursor 永不回退
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cursors(cursor_key, cursor, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(cursor_key) DO UPDATE SET
                    cursor=MAX(cursors.cursor, excluded.cursor),
                    updated_at=excluded.updated_at
                """,
                (cursor_key, int(cursor), _utc_now_iso()),
            )
            row = conn.execute("SELECT cursor FROM cursors WHERE cursor_key = ?", (cursor_key,)).fetchone()
            return int(row["cursor"])

    def record_notify_failure(self, *, event_id: int, subscriber_id: str, channel: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notify_failures(event_id, subscriber_id, channel, error, created_at)
                VALUES(?, ?, ?, ?, ?)
                """,
                (event_id, subscriber_id, channel, error, _utc_now_iso()),
            )

    def create(self, subscriber_id: str, domain: str) -> Subscription:
        domain = normalize_domain(domain)
        subscriber_id = str(subscriber_id).strip()
        if not subscriber_id or not domain:
            raise ValueError("subscriber_id and domain are required")
        created_at = _utc_now_iso()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO subscriptions(subscriber_id, domain, created_at) VALUES(?, ?, ?)",
                    (subscriber_id, domain, created_at),
                )
        except sqlite3.IntegrityError as e:
            raise SubscriptionExists(subscriber_id, domain) from e
        return Subscription(subscriber_id=subscriber_id, domain=domain, created_at=_parse_dt(created_at))

    def delete(self, subscriber_id: str, domain: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM subscriptions WHERE subscriber_id = ? AND domain = ?",
                (str(subscriber_id).strip(), normalize_domain(domain)),
            )
            return cur.rowcount > 0

    def find_by_domain(self, domain: str) -> list[Subscription]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT subscriber_id, domain, created_at FROM subscriptions WHERE domain = ? ORDER BY subscriber_id",
                (normalize_domain(domain),),
            ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    def list_subscriptions(self) -> list[Subscription]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT subscriber_id, domain, created_at FROM subscriptions ORDER BY domain, subscriber_id"
            ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            subscriber_id=row["subscriber_id"],
            domain=row["domain"],
            created_at=_parse_dt(row["created_at"]),
        )
