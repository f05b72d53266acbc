"""
Commerce Hub: コマンドハンドラ (Write 側)

倉庫の在庫調整と注文ステータス更新。どちらもストアへの条件付き書き込み 1 回で
完結する。書き込み前のチェックは正確なエラーメッセージを返すためだけのもので、
最終的な判定は書き込み自体が行う。
"""


import logging
from datetime import datetime, timezone
from decimal import Decimal

from .audit import AuditSink
from .models import (
    AuditActor,
    AuditEntry,
    AuditEvent,
    LineRequest,
    Order,
    OrderItem,
    OrderStatus,
    ProductStock,
    can_transition,
)
from .order_store import OrderStore
from .product_store import ProductStore
from .results import ErrorKind, Result

logger = logging.getLogger(__name__)


async def adjust_stock(
    products: ProductStore,
    audit: AuditSink,
    product_id: str,
    delta: int,
) -> Result[ProductStock]:
    """
    在庫調整コマンド (入荷または廃棄)

    1. delta が 0 ならストアに触れずに拒否
    2. 在庫が 0 以上に保たれるガード付きで delta を適用
    3. 一致しなければ商品を 1 回だけ読み、「存在しない」と「在庫不足」を区別
    """
    if delta == 0:
        return Result.fail(ErrorKind.INVALID_ARGUMENT, "Delta cannot be zero.")

    product = await products.adjust_stock(product_id, delta)

    if product is None:
        existing = await products.get(product_id)
        if existing is None:
            return Result.fail(ErrorKind.NOT_FOUND, f"Product '{product_id}' not found.")
        return Result.fail(
            ErrorKind.INSUFFICIENT_STOCK,
            f"Adjustment of {delta} units would cause negative stock. "
            f"Current stock: {existing.stock_quantity}.",
        )

    logger.info(
        "Stock adjusted by %d for product %s. New quantity: %d",
        delta,
        product_id,
        product.stock_quantity,
    )

    audit.append(
        AuditEntry(
            event=AuditEvent.STOCK_ADJUSTED,
            actor=AuditActor.WAREHOUSE,
            entity_type="Product",
            entity_id=product.id,
            timestamp=datetime.now(timezone.utc),
            delta=delta,
            stock_before=product.stock_quantity - delta,
            stock_after=product.stock_quantity,
        )
    )

    return Result.ok(
        ProductStock(
            id=product.id,
            name=product.name,
            stock_quantity=product.stock_quantity,
        )
    )


async def update_order(
    orders: OrderStore,
    audit: AuditSink,
    order_id: str,
    customer_id: str,
    items: list[LineRequest],
    status: OrderStatus,
) -> Result[Order]:
    """
    注文更新コマンド (ステータス遷移を伴う全体置き換え)

    1. 注文を読み込む。なければ NotFound
    2. 遷移表で現在のステータスを確認。許されなければ Conflict
    3. 条件付き置き換え。並行する 2 つの更新が両方成功するのを実際に防ぐのはここ
    """
    existing = await orders.get(order_id)
    if existing is None:
        return Result.fail(ErrorKind.NOT_FOUND, f"Order '{order_id}' not found.")

    if not can_transition(existing.status, status):
        return Result.fail(
            ErrorKind.CONFLICT,
            f"Cannot transition order from {existing.status.value} to {status.value}.",
        )

    # 明細はチェックアウト時の商品名と単価を引き継ぐ
    snapshots = {i.product_id: i for i in existing.items}
    replacement = Order(
        id=order_id,
        customer_id=customer_id,
        items=[
            OrderItem(
                product_id=line.product_id,
                product_name=snapshots[line.product_id].product_name
                if line.product_id in snapshots
                else "",
                quantity=line.quantity,
                unit_price=snapshots[line.product_id].unit_price
                if line.product_id in snapshots
                else Decimal("0"),
            )
            for line in items
        ],
        status=status,
        total_amount=existing.total_amount,
        created_at=existing.created_at,
        updated_at=datetime.now(timezone.utc),
    )

    saved = await orders.replace(order_id, replacement, expected_status=existing.status)
    if saved is None:
        return Result.fail(
            ErrorKind.CONFLICT,
            f"Order '{order_id}' was modified concurrently or has already been shipped.",
        )

    audit.append(
        AuditEntry(
            event=AuditEvent.ORDER_STATUS_CHANGED,
            actor=AuditActor.FULFILLMENT,
            entity_type="Order",
            entity_id=order_id,
            timestamp=saved.updated_at,
            old_status=existing.status,
            new_status=saved.status,
        )
    )

    return Result.ok(saved)
