from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


CREATE_SQL = """
CREATE TABLE IF NOT EXISTS webhook_receipts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  received_at TEXT NOT NULL,
  table_name TEXT NOT NULL,
  record_id INTEGER NOT NULL,
  action TEXT NOT NULL,
  client_ip TEXT NOT NULL,
  handlers_executed INTEGER NOT NULL,
  handlers_failed INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_receipts_received_at ON webhook_receipts(received_at);
CREATE INDEX IF NOT EXISTS idx_receipts_table ON webhook_receipts(table_name);
"""


class WebhookLog:
    """Diagnostic log of inbound MinistryPlatform webhooks.

    Only the notifications are recorded; the events fanned out to SSE
    clients are never stored.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self.db = await aiosqlite.connect(self.db_path)
        await self.db.execute("PRAGMA journal_mode=WAL;")
        await self.db.execute("PRAGMA synchronous=NORMAL;")
        await self.db.executescript(CREATE_SQL)
        await self.db.commit()

    async def close(self) -> None:
        if self.db:
            await self.db.close()
            self.db = None

    async def add_receipt(
        self,
        *,
        received_at: str,
        table: str,
        record_id: int,
        action: str,
        client_ip: str,
        handlers_executed: int,
        handlers_failed: int,
    ) -> int:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            """
            INSERT INTO webhook_receipts (
              received_at, table_name, record_id, action,
              client_ip, handlers_executed, handlers_failed
            ) VALUES (?,?,?,?,?,?,?)
            """,
            (
                received_at,
                table,
                record_id,
                action,
                client_ip,
                handlers_executed,
                handlers_failed,
            ),
        )
        await self.db.commit()
        return int(cur.lastrowid)

    async def get_receipts(
        self,
        after_id: int,
        limit: int,
        table: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Get receipts in id order.

        Args:
            after_id: Return receipts with ID > this value
            limit: Maximum number of receipts to return
            table: Optional filter by MinistryPlatform table name

        Returns:
            Tuple of (receipts list, last_id)
        """
        assert self.db is not None, "DB not connected"
        limit = max(1, min(limit, 200))
        after_id = max(0, int(after_id))

        conditions = ["id > ?"]
        params: List[Any] = [after_id]
        if table:
            conditions.append("table_name = ?")
            params.append(table)

        where_clause = " AND ".join(conditions)
        cur = await self.db.execute(
            f"""
            SELECT
              id, received_at, table_name, record_id, action,
              client_ip, handlers_executed, handlers_failed
            FROM webhook_receipts
            WHERE {where_clause}
            ORDER BY id ASC
            LIMIT ?
            """,
            (*params, limit),
        )
        rows = await cur.fetchall()

        receipts: List[Dict[str, Any]] = []
        last_id = after_id
        for (rid, received_at, table_name, record_id, action, client_ip, executed, failed) in rows:
            last_id = int(rid)
            receipts.append(
                dict(
                    id=int(rid),
                    received_at=received_at,
                    table=table_name,
                    record_id=int(record_id),
                    action=action,
                    client_ip=client_ip,
                    handlers_executed=int(executed),
                    handlers_failed=int(failed),
                )
            )
        return receipts, last_id

    async def get_statistics(self) -> Dict[str, Any]:
        assert self.db is not None, "DB not connected"

        cur = await self.db.execute("SELECT COUNT(*) FROM webhook_receipts")
        row = await cur.fetchone()
        total_count = row[0] if row else 0

        cur = await self.db.execute(
            "SELECT table_name, COUNT(*) as count FROM webhook_receipts GROUP BY table_name ORDER BY count DESC"
        )
        rows = await cur.fetchall()
        by_table = {name: count for name, count in rows}

        # received_at is ISO-8601 with a T separator; compare on the same shape
        cur = await self.db.execute(
            "SELECT COUNT(*) FROM webhook_receipts "
            "WHERE received_at > strftime('%Y-%m-%dT%H:%M:%S', 'now', '-1 day')"
        )
        row = await cur.fetchone()
        last_24h = row[0] if row else 0

        cur = await self.db.execute(
            "SELECT COALESCE(SUM(handlers_failed), 0) FROM webhook_receipts"
        )
        row = await cur.fetchone()
        handler_failures = row[0] if row else 0

        cur = await self.db.execute(
            "SELECT MIN(received_at), MAX(received_at) FROM webhook_receipts"
        )
        row = await cur.fetchone()
        first_receipt = row[0] if row and row[0] else None
        last_receipt = row[1] if row and row[1] else None

        return {
            "total_receipts": total_count,
            "receipts_last_24h": last_24h,
            "handler_failures": handler_failures,
            "by_table": by_table,
            "first_receipt": first_receipt,
            "last_receipt": last_receipt,
        }

    async def cleanup_old_receipts(self, days: int) -> int:
        """Delete receipts older than the specified number of days.

        Returns:
            Number of deleted receipts
        """
        assert self.db is not None, "DB not connected"

        cur = await self.db.execute(
            "DELETE FROM webhook_receipts "
            "WHERE received_at < strftime('%Y-%m-%dT%H:%M:%S', 'now', ? || ' days')",
            (f"-{days}",),
        )
        await self.db.commit()

        return cur.rowcount if cur.rowcount else 0
