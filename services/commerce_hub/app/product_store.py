"""
Commerce Hub: 商品ストア

在庫は WHERE 句に在庫ガードを持つ UPDATE 1 文でしか変更しない。
PostgreSQL は行ロックの下でガードの評価と更新を行うので、最後の在庫を
取り合う 2 つのリクエストはデータベース内で直列化される:
一方が一致して減算し、もう一方は何にも一致せず None を受け取る。
"""


from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import Product

_COLUMNS = "id, name, sku, price, stock_quantity"


def _to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        sku=row.sku,
        price=row.price,
        stock_quantity=row.stock_quantity,
    )


class ProductStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get(self, product_id: str) -> Product | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM products WHERE id = :id"),
                {"id": product_id},
            )
            row = result.fetchone()
            return _to_product(row) if row else None

    async def list_all(self) -> list[Product]:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT {_COLUMNS} FROM products ORDER BY name"),
            )
            return [_to_product(row) for row in result.fetchall()]

    async def decrement_stock(self, product_id: str, quantity: int) -> Product | None:
        """
        在庫が quantity 以上あれば quantity だけ減らす

        減算後の商品を返す。商品がない、または在庫不足なら None。
        """
        return await self._conditional_update(
            product_id,
            -quantity,
            "stock_quantity >= :needed",
            quantity,
        )

    async def adjust_stock(self, product_id: str, delta: int) -> Product | None:
        """
        符号付きの delta を適用する。負の delta は結果が 0 以上になるときだけ
        適用し、正の delta は下限チェックなしで適用する。
        """
        if delta < 0:
            return await self._conditional_update(
                product_id, delta, "stock_quantity >= :needed", -delta
            )
        return await self._conditional_update(product_id, delta)

    async def increment_stock(self, product_id: str, quantity: int) -> int | None:
        """無条件で在庫を戻し、戻した後の在庫数を返す"""
        product = await self._conditional_update(product_id, quantity)
        return product.stock_quantity if product else None

    async def _conditional_update(
        self,
        product_id: str,
        delta: int,
        guard: str | None = None,
        needed: int | None = None,
    ) -> Product | None:
        where = "id = :id"
        params = {"id": product_id, "delta": delta}
        if guard:
            where += f" AND {guard}"
            params["needed"] = needed

        async with self.session_factory() as session:
            result = await session.execute(
                text(f"""
                    UPDATE products
                    SET stock_quantity = stock_quantity + :delta
                    WHERE {where}
                    RETURNING {_COLUMNS}
                """),
                params,
            )
            row = result.fetchone()
            await session.commit()
            return _to_product(row) if row else None
