"""create billing core tables

Revision ID: c7d2e9a41f03
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "c7d2e9a41f03"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=True,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "sellers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("suspended_for_fraud", sa.Boolean(), nullable=False),
        sa.Column("enable_payment_email", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("is_membership", sa.Boolean(), nullable=False),
        sa.Column("is_in_preorder_state", sa.Boolean(), nullable=False),
        sa.Column("release_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["seller_id"], ["sellers.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_products_seller_id"), "products", ["seller_id"], unique=False)

    op.create_table(
        "tiers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("apply_price_changes_to_existing_memberships", sa.Boolean(), nullable=False),
        sa.Column("subscription_price_change_effective_date", sa.Date(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tiers_product_id"), "tiers", ["product_id"], unique=False)

    op.create_table(
        "prices",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("tier_id", sa.String(length=36), nullable=True),
        sa.Column("recurrence", sa.String(length=20), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tier_id"], ["tiers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_prices_product_id"), "prices", ["product_id"], unique=False)
    op.create_index(op.f("ix_prices_tier_id"), "prices", ["tier_id"], unique=False)

    op.create_table(
        "offer_codes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("amount_percentage", sa.Integer(), nullable=True),
        sa.Column("duration_in_billing_cycles", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_offer_codes_code"), "offer_codes", ["code"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("price_id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("charge_occurrence_count", sa.Integer(), nullable=True),
        sa.Column("free_trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by_buyer", sa.Boolean(), nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_test_subscription", sa.Boolean(), nullable=False),
        sa.Column("flat_fee_applicable", sa.Boolean(), nullable=False),
        sa.Column("is_resubscription_pending_confirmation", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["price_id"], ["prices.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscriptions_product_id"), "subscriptions", ["product_id"], unique=False
    )

    op.create_table(
        "subscription_plan_changes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=False),
        sa.Column("tier_id", sa.String(length=36), nullable=True),
        sa.Column("recurrence", sa.String(length=20), nullable=False),
        sa.Column("perceived_price_cents", sa.Integer(), nullable=True),
        sa.Column("effective_on", sa.Date(), nullable=True),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("for_product_price_change", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tier_id"], ["tiers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscription_plan_changes_subscription_id"),
        "subscription_plan_changes",
        ["subscription_id"],
        unique=False,
    )

    op.create_table(
        "preorders",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("state", sa.String(length=30), nullable=False),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("auto_cancelled", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_preorders_product_id"), "preorders", ["product_id"], unique=False)
    op.create_index(op.f("ix_preorders_state"), "preorders", ["state"], unique=False)

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("purchase_state", sa.String(length=40), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=True),
        sa.Column("preorder_id", sa.String(length=36), nullable=True),
        sa.Column("tier_id", sa.String(length=36), nullable=True),
        sa.Column("price_id", sa.String(length=36), nullable=True),
        sa.Column("offer_code_id", sa.String(length=36), nullable=True),
        sa.Column("replaced_original_purchase_id", sa.String(length=36), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("is_original_subscription_purchase", sa.Boolean(), nullable=False),
        sa.Column("is_archived_original_subscription_purchase", sa.Boolean(), nullable=False),
        sa.Column("is_free_trial_purchase", sa.Boolean(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("displayed_price_cents", sa.Integer(), nullable=False),
        sa.Column("displayed_price_cents_before_offer_code", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("processor_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("processor_setup_intent_id", sa.String(length=255), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("succeeded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["preorder_id"], ["preorders.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["tier_id"], ["tiers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["price_id"], ["prices.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["offer_code_id"], ["offer_codes.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["replaced_original_purchase_id"], ["purchases.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_purchases_purchase_state"), "purchases", ["purchase_state"], unique=False
    )
    op.create_index(op.f("ix_purchases_product_id"), "purchases", ["product_id"], unique=False)
    op.create_index(
        op.f("ix_purchases_subscription_id"), "purchases", ["subscription_id"], unique=False
    )
    op.create_index(op.f("ix_purchases_preorder_id"), "purchases", ["preorder_id"], unique=False)
    op.create_index(
        op.f("ix_purchases_processor_payment_intent_id"),
        "purchases",
        ["processor_payment_intent_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_purchases_processor_setup_intent_id"),
        "purchases",
        ["processor_setup_intent_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_purchases_processor_setup_intent_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_processor_payment_intent_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_preorder_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_subscription_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_product_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_purchase_state"), table_name="purchases")
    op.drop_table("purchases")
    op.drop_index(op.f("ix_preorders_state"), table_name="preorders")
    op.drop_index(op.f("ix_preorders_product_id"), table_name="preorders")
    op.drop_table("preorders")
    op.drop_index(
        op.f("ix_subscription_plan_changes_subscription_id"),
        table_name="subscription_plan_changes",
    )
    op.drop_table("subscription_plan_changes")
    op.drop_index(op.f("ix_subscriptions_product_id"), table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index(op.f("ix_offer_codes_code"), table_name="offer_codes")
    op.drop_table("offer_codes")
    op.drop_index(op.f("ix_prices_tier_id"), table_name="prices")
    op.drop_index(op.f("ix_prices_product_id"), table_name="prices")
    op.drop_table("prices")
    op.drop_index(op.f("ix_tiers_product_id"), table_name="tiers")
    op.drop_table("tiers")
    op.drop_index(op.f("ix_products_seller_id"), table_name="products")
    op.drop_table("products")
    op.drop_table("sellers")
