"""
Commerce Hub: 冪等キー

クライアントが送る Idempotency-Key と、それで作られた注文を対応付ける。
キーは Redis に置き、保持期間が過ぎれば自動で消える。サービス側で掃除はしない。
"""

import logging

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        prefix: str = "idempotency",
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get_order_id(self, key: str) -> str | None:
        return await self.redis.get(self._key(key))

    async def store(self, key: str, order_id: str, overwrite: bool = False) -> bool:
        """
        key → order_id を記録する

        通常は SET NX で先勝ち。後から来た書き込みはエラーにせず、ログを残して
        既存の対応を残す。overwrite は存在しない注文を指す古い対応を
        付け替えるときだけ使う。書き込んだかどうかを返す。
        """
        stored = await self.redis.set(
            self._key(key), order_id, nx=not overwrite, ex=self.ttl_seconds
        )
        if not stored:
            logger.warning(
                "Idempotency key %s already stored by a concurrent request", key
            )
            return False
        return True
