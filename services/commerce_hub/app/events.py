"""
Commerce Hub: 統合イベント

変更が確定した後に他サービスへ発行するイベント。
過去形で命名し、発行後は変更しない。
"""


from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from .models import Order


class OrderCreatedItem(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal


class OrderCreated(BaseModel):
    """An order was created by checkout."""
    order_id: str
    customer_id: str
    total_amount: Decimal
    created_at: datetime
    items: list[OrderCreatedItem]

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            customer_id=order.customer_id,
            total_amount=order.total_amount,
            created_at=order.created_at,
            items=[
                OrderCreatedItem(
                    product_id=i.product_id,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                )
                for i in order.items
            ],
        )
