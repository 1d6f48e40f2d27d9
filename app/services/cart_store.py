# app/services/cart_store.py
from __future__ import annotations

from typing import Iterable, List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.cart import CartItem
from app.models.product import Product, ProductVariant
from app.services.checkout_types import LineItem


class CartStore:
    """
    购物车协作方：

    - get_live_items：按 variant 当前价格组装“实时行”（购物车本身不存价格）
    - clear_items：下单 / capture 成功后清掉已消费的行
    """

    @staticmethod
    async def get_live_items(session: AsyncSession, buyer_id: int) -> List[LineItem]:
        rows = (
            await session.execute(
                select(
                    CartItem.variant_id,
                    Product.seller_id,
                    ProductVariant.price,
                    CartItem.quantity,
                )
                .join(ProductVariant, ProductVariant.id == CartItem.variant_id)
                .join(Product, Product.id == ProductVariant.product_id)
                .where(CartItem.buyer_id == int(buyer_id))
                .order_by(CartItem.id)
            )
        ).all()
        return [
            LineItem(
                variant_id=int(r.variant_id),
                seller_id=int(r.seller_id),
                unit_price=r.price,
                quantity=int(r.quantity),
            )
            for r in rows
        ]

    @staticmethod
    async def clear_items(session: AsyncSession, buyer_id: int, variant_ids: Iterable[int]) -> int:
        ids = sorted({int(v) for v in variant_ids})
        if not ids:
            return 0
        res = await session.execute(
            delete(CartItem)
            .where(CartItem.buyer_id == int(buyer_id))
            .where(CartItem.variant_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return int(res.rowcount or 0)
