"""
Commerce Hub: イベント発行

統合イベントを Redis Streams に発行する。Pub/Sub と違いストリームは
購読側が落ちている間もエントリを保持するので、再起動後に追いつける。
ルーティングキーごとに 1 ストリームで、おおよそ max_len 件で切り詰める。
"""


import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream_prefix: str = "commerce_hub",
        max_len: int = 100_000,
    ):
        self.redis = redis
        self.stream_prefix = stream_prefix
        self.max_len = max_len

    async def publish(self, routing_key: str, payload: BaseModel) -> str:
        """イベントをストリームに追加し、メッセージ ID を返す"""
        stream = f"{self.stream_prefix}:{routing_key}"
        message_id = str(uuid4())
        await self.redis.xadd(
            stream,
            {
                "event_type": type(payload).__name__,
                "message_id": message_id,
                "published_at": datetime.now(timezone.utc).isoformat(),
                "data": payload.model_dump_json(),
            },
            maxlen=self.max_len,
            approximate=True,
        )
        logger.info(
            "Published %s to %s (message_id=%s)",
            type(payload).__name__,
            stream,
            message_id,
        )
        return message_id
