"""checkout initial schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # 目录（只读协作方）：products / product_variant
    # ------------------------------------------------------------------
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])

    op.create_table(
        "product_variant",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "product_id",
            sa.Integer(),
            sa.ForeignKey("products.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("color", sa.String(64), nullable=True),
        sa.Column("storage", sa.String(64), nullable=True),
        sa.Column("ram", sa.String(64), nullable=True),
        sa.Column("price", _MONEY, nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_product_variant_stock_nonneg"),
    )
    op.create_index("ix_product_variant_product_id", "product_variant", ["product_id"])

    # ------------------------------------------------------------------
    # 购物车
    # ------------------------------------------------------------------
    op.create_table(
        "cart_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column(
            "variant_id",
            sa.Integer(),
            sa.ForeignKey("product_variant.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("buyer_id", "variant_id", name="uq_cart_items_buyer_variant"),
        sa.CheckConstraint("quantity > 0", name="ck_cart_items_qty_pos"),
    )
    op.create_index("ix_cart_items_buyer_id", "cart_items", ["buyer_id"])

    # ------------------------------------------------------------------
    # 卖家券
    # ------------------------------------------------------------------
    op.create_table(
        "promotions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("voucher_code", sa.String(64), nullable=False),
        sa.Column("discount_type", sa.String(16), nullable=False),
        sa.Column("discount_value", _MONEY, nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.CheckConstraint("used_count >= 0", name="ck_promotions_used_nonneg"),
        sa.CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_promotions_used_within_limit",
        ),
    )
    op.create_index("ix_promotions_seller_id", "promotions", ["seller_id"])
    op.create_index(
        "uq_promotions_code_lower",
        "promotions",
        [sa.text("lower(voucher_code)")],
        unique=True,
    )

    # ------------------------------------------------------------------
    # 订单 / 明细 / 付款
    # ------------------------------------------------------------------
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("order_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="unpaid"),
        sa.Column("subtotal", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("tax_amount", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("shipping_amount", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column(
            "voucher_id",
            sa.Integer(),
            sa.ForeignKey("promotions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("shipping_address", sa.Text(), nullable=False),
        sa.Column("gateway_ref", sa.String(64), nullable=True),
        sa.Column("stock_reserved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_order_status", "orders", ["order_status"])
    op.create_index("ix_orders_gateway_ref", "orders", ["gateway_ref"])
    op.create_index("ix_orders_buyer_created", "orders", ["buyer_id", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "variant_id",
            sa.Integer(),
            sa.ForeignKey("product_variant.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", _MONEY, nullable=False),
        sa.Column("item_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_qty_pos"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("transaction_id", sa.String(128), nullable=True),
        sa.Column("amount_paid", _MONEY, nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    # 每单最多一条 completed 付款
    op.create_index(
        "uq_payments_order_completed",
        "payments",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("payment_status = 'completed'"),
        sqlite_where=sa.text("payment_status = 'completed'"),
    )

    # ------------------------------------------------------------------
    # 站点配置（单行）
    # ------------------------------------------------------------------
    op.create_table(
        "site_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ship_free", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ship_flat", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flat_rate_amount", _MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("pay_cod", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pay_paypal", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ------------------------------------------------------------------
    # 审计
    # ------------------------------------------------------------------
    op.create_table(
        "audit_events",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("category", sa.String(64), nullable=False),
        sa.Column("ref", sa.String(128), nullable=False),
        sa.Column("trace_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("meta", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
    )
    op.create_index("ix_audit_events_cat_ref_time", "audit_events", ["category", "ref", "created_at"])
    op.create_index("ix_audit_events_ref", "audit_events", ["ref"])
    op.create_index("ix_audit_events_trace_id", "audit_events", ["trace_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("site_settings")
    op.drop_index("uq_payments_order_completed", table_name="payments")
    op.drop_table("payments")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_index("uq_promotions_code_lower", table_name="promotions")
    op.drop_table("promotions")
    op.drop_table("cart_items")
    op.drop_table("product_variant")
    op.drop_table("products")
