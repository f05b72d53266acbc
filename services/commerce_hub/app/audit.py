"""
Commerce Hub: 監査ログ

監査ログの書き込みは fire-and-forget。append は INSERT を独自の
セッションを持つ別の asyncio タスクに渡すので、書き込みは呼び出し元の
リクエストに縛られない。クライアントが切断してリクエストのタスクが
キャンセルされても監査タスクは止まらない。失敗はログに残し、呼び出し元には伝えない。
"""


import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        # イベントループはタスクを弱参照でしか保持しない
        self._pending: set[asyncio.Task] = set()

    def append(self, entry: AuditEntry) -> None:
        task = asyncio.create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """予約済みの書き込みをすべて待つ。シャットダウン時に呼ぶ"""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _write(self, entry: AuditEntry) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO audit_logs
                            (timestamp, event, actor, entity_type, entity_id, delta,
                             stock_before, stock_after, related_order_id,
                             old_status, new_status)
                        VALUES
                            (:timestamp, :event, :actor, :entity_type, :entity_id, :delta,
                             :stock_before, :stock_after, :related_order_id,
                             :old_status, :new_status)
                    """),
                    entry.model_dump(mode="json") | {"timestamp": entry.timestamp},
                )
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to write audit entry %s for %s %s",
                entry.event.value,
                entry.entity_type,
                entry.entity_id,
            )
