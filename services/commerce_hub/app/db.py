"""
Commerce Hub: スキーマ初期化

起動時にテーブルとインデックスを作成する。どの文も冪等なので、既存の
データベースに対して何度再起動してもよい。

注文明細は注文行の JSONB に入れる。注文は 1 ドキュメントであり、
作成も置き換えも 1 行への原子的な書き込みになる。
"""


import logging
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id             TEXT PRIMARY KEY,
        name           TEXT NOT NULL,
        sku            TEXT NOT NULL UNIQUE,
        price          NUMERIC(12, 2) NOT NULL,
        stock_quantity INTEGER NOT NULL CHECK (stock_quantity >= 0)
    )
    """,
    # 条件付き更新の在庫ガード用
    "CREATE INDEX IF NOT EXISTS ix_products_stock_quantity ON products (stock_quantity)",
    """
    CREATE TABLE IF NOT EXISTS orders (
        id           TEXT PRIMARY KEY,
        customer_id  TEXT NOT NULL,
        items        JSONB NOT NULL,
        status       TEXT NOT NULL,
        total_amount NUMERIC(12, 2) NOT NULL,
        created_at   TIMESTAMPTZ NOT NULL,
        updated_at   TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_customer_id ON orders (customer_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
    "CREATE INDEX IF NOT EXISTS ix_orders_created_at ON orders (created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id               BIGSERIAL PRIMARY KEY,
        timestamp        TIMESTAMPTZ NOT NULL,
        event            TEXT NOT NULL,
        actor            TEXT NOT NULL,
        entity_type      TEXT NOT NULL,
        entity_id        TEXT NOT NULL,
        delta            INTEGER,
        stock_before     INTEGER,
        stock_after      INTEGER,
        related_order_id TEXT,
        old_status       TEXT,
        new_status       TEXT
    )
    """,
    # エンティティごとの全イベント (新しい順)
    "CREATE INDEX IF NOT EXISTS ix_audit_logs_entity ON audit_logs (entity_id, timestamp DESC)",
    """
    CREATE INDEX IF NOT EXISTS ix_audit_logs_related_order
        ON audit_logs (related_order_id) WHERE related_order_id IS NOT NULL
    """,
]

SEED_PRODUCTS = [
    ("000000000000000000000001", "Widget Pro", "WGT-PRO-001", Decimal("29.99"), 100),
    ("000000000000000000000002", "Gadget Basic", "GDG-BSC-002", Decimal("14.50"), 50),
    # 在庫不足の経路を試すため意図的に少なくしてある
    ("000000000000000000000003", "Thingamajig Elite", "TMJ-ELT-003", Decimal("89.00"), 5),
]


async def init_db(engine: AsyncEngine, seed: bool = False) -> None:
    """スキーマを作成し、必要ならデモ商品を初期状態に戻す"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))

        if seed:
            for product_id, name, sku, price, stock in SEED_PRODUCTS:
                await conn.execute(
                    text("""
                        INSERT INTO products (id, name, sku, price, stock_quantity)
                        VALUES (:id, :name, :sku, :price, :stock)
                        ON CONFLICT (id) DO UPDATE
                        SET name = EXCLUDED.name,
                            sku = EXCLUDED.sku,
                            price = EXCLUDED.price,
                            stock_quantity = EXCLUDED.stock_quantity
                    """),
                    {
                        "id": product_id,
                        "name": name,
                        "sku": sku,
                        "price": price,
                        "stock": stock,
                    },
                )
            logger.info("Seeded %d products", len(SEED_PRODUCTS))
