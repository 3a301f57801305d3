"""
Fulfillment Service — 商品カタログ (外部コラボレータの参照口)

商品の CRUD や検索はこのサービスの範囲外。ここでは取引に必要な
商品の読み取りと価格変更だけを扱う。数量の変更は必ず ledger を通す。
"""

from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import isoformat, utcnow
from .errors import ProductNotFound

SIGNIFICANT_PRICE_CHANGE_PERCENT = 10


class ProductSnapshot(BaseModel):
    id: str
    seller_id: str
    name: str
    unit: str
    price: int
    available_quantity: int
    initial_quantity: int
    status: str


class PriceChange(BaseModel):
    product_id: str
    old_price: int
    new_price: int
    percent_change: Decimal | None
    significant: bool


async def get_product(session: AsyncSession, product_id: str) -> ProductSnapshot | None:
    result = await session.execute(
        text("""
            SELECT id, seller_id, name, unit, price,
                   available_quantity, initial_quantity, status
            FROM products
            WHERE id = :id
        """),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return ProductSnapshot(
        id=row.id,
        seller_id=row.seller_id,
        name=row.name,
        unit=row.unit,
        price=row.price,
        available_quantity=row.available_quantity,
        initial_quantity=row.initial_quantity,
        status=row.status,
    )


def percent_change(old_price: int, new_price: int) -> Decimal | None:
    """旧価格 0 からの変化率は定義できないので None"""
    if old_price == 0:
        return None
    return (Decimal(new_price - old_price) / Decimal(old_price)) * 100


def is_significant_price_change(old_price: int, new_price: int) -> bool:
    """
    10% を超える価格変更を「大きな変更」とみなす。
    旧価格が 0 の場合は、価格が変わっていれば常に大きな変更。
    """
    if old_price == new_price:
        return False
    change = percent_change(old_price, new_price)
    if change is None:
        return True
    return abs(change) > SIGNIFICANT_PRICE_CHANGE_PERCENT


async def change_price(session: AsyncSession, product_id: str, new_price: int) -> PriceChange:
    """
    商品価格の変更

    既存取引の price_per_unit は作成時のスナップショットなので影響しない。
    """
    if new_price < 0:
        raise ValueError("price must not be negative")
    product = await get_product(session, product_id)
    if product is None:
        raise ProductNotFound(product_id)

    await session.execute(
        text("UPDATE products SET price = :price, updated_at = :now WHERE id = :id"),
        {"price": new_price, "now": isoformat(utcnow()), "id": product_id},
    )
    await session.commit()

    return PriceChange(
        product_id=product_id,
        old_price=product.price,
        new_price=new_price,
        percent_change=percent_change(product.price, new_price),
        significant=is_significant_price_change(product.price, new_price),
    )
