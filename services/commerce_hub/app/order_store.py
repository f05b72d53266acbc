"""
Commerce Hub: 注文ストア

注文は明細を JSONB で埋め込んだ 1 行。作成も置き換えもそれぞれ
1 文の原子的な操作になる。
"""


import json
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import Order, OrderItem, OrderStatus

_COLUMNS = "id, customer_id, items, status, total_amount, created_at, updated_at"


def _to_order(row) -> Order:
    items = json.loads(row.items) if isinstance(row.items, str) else row.items
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        items=[OrderItem(**i) for i in items],
        status=OrderStatus(row.status),
        total_amount=row.total_amount,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _dump_items(order: Order) -> str:
    return json.dumps([i.model_dump(mode="json") for i in order.items])


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get(self, order_id: str) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            row = result.fetchone()
            return _to_order(row) if row else None

    async def find_all(self, customer_id: str | None = None) -> list[Order]:
        """新しい順。customer_id があればその顧客の注文だけ"""
        async with self.session_factory() as session:
            if customer_id:
                result = await session.execute(
                    text(f"""
                        SELECT {_COLUMNS} FROM orders
                        WHERE customer_id = :customer_id
                        ORDER BY created_at DESC
                    """),
                    {"customer_id": customer_id},
                )
            else:
                result = await session.execute(
                    text(f"SELECT {_COLUMNS} FROM orders ORDER BY created_at DESC"),
                )
            return [_to_order(row) for row in result.fetchall()]

    async def create(self, order: Order) -> Order:
        """新しい ID を振って注文を挿入し、それを返す"""
        created = order.model_copy(update={"id": str(uuid4())})
        async with self.session_factory() as session:
            await session.execute(
                text(f"""
                    INSERT INTO orders ({_COLUMNS})
                    VALUES (:id, :customer_id, CAST(:items AS JSONB), :status,
                            :total_amount, :created_at, :updated_at)
                """),
                {
                    "id": created.id,
                    "customer_id": created.customer_id,
                    "items": _dump_items(created),
                    "status": created.status.value,
                    "total_amount": created.total_amount,
                    "created_at": created.created_at,
                    "updated_at": created.updated_at,
                },
            )
            await session.commit()
        return created

    async def replace(
        self,
        order_id: str,
        order: Order,
        expected_status: OrderStatus,
    ) -> Order | None:
        """
        注文がまだ expected_status で、かつ Shipped でないときだけ置き換える

        行がない、または別のリクエストが先に遷移させた場合は None。
        ステータス確認と書き込みを 1 つの UPDATE で行うので、読み込みから
        置き換えまでの間に割り込まれない。
        """
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"""
                    UPDATE orders
                    SET customer_id = :customer_id,
                        items = CAST(:items AS JSONB),
                        status = :status,
                        total_amount = :total_amount,
                        created_at = :created_at,
                        updated_at = :updated_at
                    WHERE id = :id
                      AND status = :expected_status
                      AND status <> :shipped
                    RETURNING {_COLUMNS}
                """),
                {
                    "id": order_id,
                    "customer_id": order.customer_id,
                    "items": _dump_items(order),
                    "status": order.status.value,
                    "total_amount": order.total_amount,
                    "created_at": order.created_at,
                    "updated_at": order.updated_at,
                    "expected_status": expected_status.value,
                    "shipped": OrderStatus.SHIPPED.value,
                },
            )
            row = result.fetchone()
            await session.commit()
            return _to_order(row) if row else None
