"""
Commerce Hub: ドメインモデル

保存され、API から返される商品・注文・監査エントリ。
注文明細はチェックアウト時点のスナップショットで、現在の商品行から
再計算しない。

注文ステータスの遷移:
    Pending    -> Processing | Cancelled
    Processing -> Shipped    | Cancelled
    Shipped, Cancelled: 終端
"""


from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    CANCELLED = "Cancelled"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class Product(BaseModel):
    id: str
    name: str
    sku: str
    price: Decimal
    stock_quantity: int = Field(ge=0)


class ProductStock(BaseModel):
    """在庫調整の結果"""
    id: str
    name: str
    stock_quantity: int


class OrderItem(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal


class Order(BaseModel):
    id: str | None = None
    customer_id: str
    items: list[OrderItem]
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal
    created_at: datetime
    updated_at: datetime


class LineRequest(BaseModel):
    """呼び出し元が指定した商品と数量"""
    product_id: str
    quantity: int


# ── Audit ────────────────────────────────────────


class AuditEvent(str, Enum):
    STOCK_DECREMENTED = "StockDecremented"
    STOCK_ROLLED_BACK = "StockRolledBack"
    STOCK_ADJUSTED = "StockAdjusted"
    ORDER_STATUS_CHANGED = "OrderStatusChanged"


class AuditActor(str, Enum):
    CHECKOUT = "Checkout"
    WAREHOUSE = "Warehouse"
    FULFILLMENT = "Fulfillment"


class AuditEntry(BaseModel):
    """
    変更の追記専用レコード

    在庫イベントは delta/stock_before/stock_after (チェックアウトでは
    related_order_id も) を、注文イベントは old_status/new_status を埋める。
    """
    event: AuditEvent
    actor: AuditActor
    entity_type: str
    entity_id: str
    timestamp: datetime
    delta: int | None = None
    stock_before: int | None = None
    stock_after: int | None = None
    related_order_id: str | None = None
    old_status: OrderStatus | None = None
    new_status: OrderStatus | None = None
