"""
Commerce Hub: チェックアウト・オーケストレーター

チェックアウトは明細ごとの商品行と注文行にまたがる。ここでは複数ドキュメントに
またがるトランザクションを使わず、補償トランザクションとして実行する:

  ┌──────────────────────────────────────────────────────────┐
  │  1. Idempotency-Key が既知なら保存済みの注文を返す        │
  │  2. 明細ごとに在庫を条件付きで減算 (リクエスト順)         │
  │     └─ 失敗 → それまでの減算をすべて戻して終了            │
  │  3. 注文を作成 (キャンセルされても shield で完了を待つ)   │
  │  4. Idempotency-Key → 注文 ID を記録 (先勝ち)             │
  │  5. 減算ごとに監査ログ (fire-and-forget)                  │
  │  6. OrderCreated を発行 (ベストエフォート、戻さない)      │
  └──────────────────────────────────────────────────────────┘

注文行ができた時点で在庫はその注文のもの。以降の失敗 (キー記録、発行) は
ログに残すだけでチェックアウトは成功扱いにする。存在する注文の在庫を戻す
ほうが通知の取りこぼしより悪い。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from .audit import AuditSink
from .events import OrderCreated
from .idempotency import IdempotencyStore
from .models import (
    AuditActor,
    AuditEntry,
    AuditEvent,
    LineRequest,
    Order,
    OrderItem,
    OrderStatus,
    Product,
)
from .order_store import OrderStore
from .product_store import ProductStore
from .publisher import EventPublisher
from .results import ErrorKind, Result

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    """適用済みで、取り消す可能性のある減算"""
    product_id: str
    quantity: int
    product: Product  # 減算直後の状態


class CheckoutOrchestrator:
    """チェックアウトのオーケストレーター"""

    def __init__(
        self,
        products: ProductStore,
        orders: OrderStore,
        idempotency: IdempotencyStore,
        audit: AuditSink,
        publisher: EventPublisher,
        routing_key: str = "order.created",
    ):
        self.products = products
        self.orders = orders
        self.idempotency = idempotency
        self.audit = audit
        self.publisher = publisher
        self.routing_key = routing_key

    async def execute(
        self,
        customer_id: str,
        items: list[LineRequest],
        idempotency_key: str | None = None,
    ) -> Result[Order]:
        stale_key = False
        if idempotency_key:
            order_id = await self.idempotency.get_order_id(idempotency_key)
            if order_id is not None:
                replayed = await self.orders.get(order_id)
                if replayed is not None:
                    logger.info(
                        "Replaying order %s for idempotency key %s", order_id, idempotency_key
                    )
                    return Result.ok(replayed)
                logger.warning(
                    "Idempotency key %s points at missing order %s. Reassigning it",
                    idempotency_key,
                    order_id,
                )
                stale_key = True

        if not items:
            return Result.fail(ErrorKind.INVALID_ARGUMENT, "At least one item is required.")
        invalid = next((i for i in items if i.quantity < 1), None)
        if invalid is not None:
            return Result.fail(
                ErrorKind.INVALID_ARGUMENT,
                f"Quantity must be at least 1 for product '{invalid.product_id}'.",
            )

        # タスクローカル。リクエスト間で共有しない
        ledger: list[Reservation] = []
        creating: asyncio.Task | None = None

        try:
            for item in items:
                product = await self.products.decrement_stock(item.product_id, item.quantity)
                if product is None:
                    await asyncio.shield(self._rollback(ledger))
                    return Result.fail(
                        ErrorKind.INSUFFICIENT_STOCK,
                        f"Insufficient stock or product not found: '{item.product_id}'.",
                    )
                ledger.append(Reservation(item.product_id, item.quantity, product))

            creating = asyncio.create_task(
                self.orders.create(self._build_order(customer_id, ledger))
            )
            created = await asyncio.shield(creating)
        except asyncio.CancelledError:
            await asyncio.shield(self._settle(ledger, creating, idempotency_key, stale_key))
            raise
        except Exception:
            logger.exception(
                "Unexpected error during checkout. Rolling back stock for %d items",
                len(ledger),
            )
            await asyncio.shield(self._rollback(ledger))
            return Result.fail(ErrorKind.INTERNAL, "Checkout failed due to an internal error.")

        await self._finish(created, ledger, idempotency_key, stale_key)
        return Result.ok(created)

    async def _settle(
        self,
        ledger: list[Reservation],
        creating: asyncio.Task | None,
        idempotency_key: str | None,
        stale_key: bool,
    ) -> None:
        """
        キャンセル時の後始末

        注文作成が走っていれば結果を待つ。作成済みなら在庫は注文のものなので
        戻さず、通常どおり後続処理を行う。作成前か作成失敗なら減算を戻す。
        """
        if creating is not None:
            await asyncio.wait({creating})
            if not creating.cancelled() and creating.exception() is None:
                created = creating.result()
                logger.warning(
                    "Checkout cancelled after order %s was created. Keeping its stock",
                    created.id,
                )
                await self._finish(created, ledger, idempotency_key, stale_key)
                return
        await self._rollback(ledger)

    async def _finish(
        self,
        created: Order,
        ledger: list[Reservation],
        idempotency_key: str | None,
        stale_key: bool,
    ) -> None:
        if idempotency_key:
            await self._remember(idempotency_key, created.id, overwrite=stale_key)

        for reservation in ledger:
            self.audit.append(
                AuditEntry(
                    event=AuditEvent.STOCK_DECREMENTED,
                    actor=AuditActor.CHECKOUT,
                    entity_type="Product",
                    entity_id=reservation.product_id,
                    timestamp=created.created_at,
                    delta=-reservation.quantity,
                    stock_before=reservation.product.stock_quantity + reservation.quantity,
                    stock_after=reservation.product.stock_quantity,
                    related_order_id=created.id,
                )
            )

        try:
            await self.publisher.publish(self.routing_key, OrderCreated.from_order(created))
        except Exception:
            logger.exception(
                "Failed to publish OrderCreated for order %s. "
                "Order is committed; manual retry required",
                created.id,
            )

    async def _remember(self, idempotency_key: str, order_id: str, overwrite: bool) -> None:
        try:
            await self.idempotency.store(idempotency_key, order_id, overwrite=overwrite)
        except Exception:
            logger.exception(
                "Failed to store idempotency key %s for order %s", idempotency_key, order_id
            )

    def _build_order(self, customer_id: str, ledger: list[Reservation]) -> Order:
        items = [
            OrderItem(
                product_id=r.product.id,
                product_name=r.product.name,
                quantity=r.quantity,
                unit_price=r.product.price,
            )
            for r in ledger
        ]
        now = datetime.now(timezone.utc)
        return Order(
            customer_id=customer_id,
            items=items,
            status=OrderStatus.PENDING,
            total_amount=sum((i.unit_price * i.quantity for i in items), start=Decimal("0")),
            created_at=now,
            updated_at=now,
        )

    async def _rollback(self, ledger: list[Reservation]) -> None:
        """
        補償トランザクション: 引き当てた在庫を古い順にすべて戻す

        戻す前に台帳から取り除くので、同じ台帳で二度ロールバックしても
        二重に戻らない。戻し失敗はログに残して次へ進み、チェックアウトを
        失敗させない。
        """
        while ledger:
            reservation = ledger.pop(0)
            try:
                stock_after = await self.products.increment_stock(
                    reservation.product_id, reservation.quantity
                )
            except Exception:
                logger.exception(
                    "CRITICAL: Failed to roll back %d units for product %s. "
                    "Manual correction required",
                    reservation.quantity,
                    reservation.product_id,
                )
                continue

            if stock_after is None:
                logger.warning(
                    "Could not roll back %d units for product %s: product no longer exists",
                    reservation.quantity,
                    reservation.product_id,
                )
                continue

            logger.info(
                "Rolled back %d units for product %s",
                reservation.quantity,
                reservation.product_id,
            )
            self.audit.append(
                AuditEntry(
                    event=AuditEvent.STOCK_ROLLED_BACK,
                    actor=AuditActor.CHECKOUT,
                    entity_type="Product",
                    entity_id=reservation.product_id,
                    timestamp=datetime.now(timezone.utc),
                    delta=reservation.quantity,
                    stock_before=stock_after - reservation.quantity,
                    stock_after=stock_after,
                )
            )
