"""ride_lifecycle_schema

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-18 10:12:31.504118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e7a9d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

account_status = sa.Enum("ACTIVE", "SUSPENDED", "INACTIVE", name="accountstatus")
vehicle_status = sa.Enum("ACTIVE", "INACTIVE", "SUSPENDED", name="vehiclestatus")
ride_status = sa.Enum("PENDING", "ACCEPTED", "IN_PROGRESS", "COMPLETED", "CANCELLED", name="ridestatus")
negotiation_status = sa.Enum("PENDING", "ACCEPTED", "REJECTED", "EXPIRED", name="negotiationstatus")
payment_method = sa.Enum("CASH", "CARD", "WALLET", "BANK_TRANSFER", name="paymentmethod")
payment_status = sa.Enum("PENDING", "PAID", "FAILED", "REFUNDED", name="paymentstatus")
discount_type = sa.Enum("PERCENTAGE", "FIXED", name="discounttype")

RIDER_ACTIVE = "status IN ('PENDING', 'ACCEPTED', 'IN_PROGRESS')"
DRIVER_ACTIVE = "status IN ('ACCEPTED', 'IN_PROGRESS')"
NEGOTIATION_PENDING = "status = 'PENDING'"


def upgrade() -> None:
    """Create users, drivers, vehicles, promos, rides and their settlement tables."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("account_status", account_status, nullable=False),
        sa.Column("total_rides", sa.Integer(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("last_active_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "driver",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("is_online", sa.Boolean(), nullable=False),
        sa.Column("current_lat", sa.Float(), nullable=True),
        sa.Column("current_lng", sa.Float(), nullable=True),
        sa.Column("total_rides", sa.Integer(), nullable=False),
        sa.Column("total_earnings", sa.Numeric(14, 2), nullable=False),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_table(
        "vehicle",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("plate_number", sa.String(), nullable=False),
        sa.Column("seats", sa.Integer(), nullable=False),
        sa.Column("status", vehicle_status, nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["driver_id"], ["driver.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plate_number"),
    )
    op.create_index("ix_vehicle_driver_id", "vehicle", ["driver_id"])
    op.create_table(
        "promocode",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount_type", discount_type, nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("min_ride_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("user_limit", sa.Integer(), nullable=True),
        sa.Column("valid_from", sa.DateTime(), nullable=False),
        sa.Column("valid_until", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )
    op.create_table(
        "userpromo",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("promo_code_id", sa.Integer(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promocode.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "promo_code_id"),
    )
    op.create_index("ix_userpromo_user_id", "userpromo", ["user_id"])
    op.create_table(
        "ride",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=True),
        sa.Column("origin_address", sa.String(), nullable=False),
        sa.Column("destination_address", sa.String(), nullable=False),
        sa.Column("origin_lat", sa.Float(), nullable=False),
        sa.Column("origin_lng", sa.Float(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=False),
        sa.Column("dest_lng", sa.Float(), nullable=False),
        sa.Column("stop_points", sa.JSON(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("seats", sa.Integer(), nullable=False),
        sa.Column("original_fare", sa.Numeric(12, 2), nullable=False),
        sa.Column("negotiated_fare", sa.Numeric(12, 2), nullable=True),
        sa.Column("final_fare", sa.Numeric(12, 2), nullable=True),
        sa.Column("promo_code_id", sa.Integer(), nullable=True),
        sa.Column("status", ride_status, nullable=False),
        sa.Column("payment_method", payment_method, nullable=True),
        sa.Column("payment_status", payment_status, nullable=True),
        sa.Column("ride_time", sa.Integer(), nullable=True),
        sa.Column("distance", sa.Float(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("accepted_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["driver_id"], ["driver.id"]),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicle.id"]),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promocode.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ride_user_id", "ride", ["user_id"])
    op.create_index("ix_ride_driver_id", "ride", ["driver_id"])
    op.create_index("ix_ride_status", "ride", ["status"])
    op.create_index("ix_ride_created_at", "ride", ["created_at"])
    op.create_index(
        "uq_ride_active_rider", "ride", ["user_id"], unique=True,
        sqlite_where=sa.text(RIDER_ACTIVE), postgresql_where=sa.text(RIDER_ACTIVE),
    )
    op.create_index(
        "uq_ride_active_driver", "ride", ["driver_id"], unique=True,
        sqlite_where=sa.text(DRIVER_ACTIVE), postgresql_where=sa.text(DRIVER_ACTIVE),
    )
    op.create_table(
        "negotiation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("proposed_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", negotiation_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("responded_by", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["responded_by"], ["driver.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_negotiation_ride_id", "negotiation", ["ride_id"])
    op.create_index(
        "uq_negotiation_pending_ride", "negotiation", ["ride_id"], unique=True,
        sqlite_where=sa.text(NEGOTIATION_PENDING), postgresql_where=sa.text(NEGOTIATION_PENDING),
    )
    op.create_table(
        "payment",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("method", payment_method, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("promo_discount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("driver_earning", sa.Numeric(12, 2), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ride_id"),
    )
    op.create_table(
        "earning",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("ride_count", sa.Integer(), nullable=False),
        sa.Column("total_fares", sa.Numeric(14, 2), nullable=False),
        sa.Column("platform_fees", sa.Numeric(14, 2), nullable=False),
        sa.ForeignKeyConstraint(["driver_id"], ["driver.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("driver_id", "day"),
    )
    op.create_index("ix_earning_driver_id", "earning", ["driver_id"])
    op.create_table(
        "recentlocation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recentlocation_user_id", "recentlocation", ["user_id"])
    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_user_id", "notification", ["user_id"])
    op.create_table(
        "wallet",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_table(
        "wallettransaction",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("balance_before", sa.Numeric(14, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallet.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallettransaction_wallet_id", "wallettransaction", ["wallet_id"])
    op.create_table(
        "rating",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("target_user_id", sa.Integer(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.String(), nullable=True),
        sa.Column("is_user_to_driver", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["target_user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ride_id"),
    )
    op.create_index("ix_rating_target_user_id", "rating", ["target_user_id"])


def downgrade() -> None:
    """Drop every table, dependents first."""
    op.drop_index("ix_rating_target_user_id", table_name="rating")
    op.drop_table("rating")
    op.drop_index("ix_wallettransaction_wallet_id", table_name="wallettransaction")
    op.drop_table("wallettransaction")
    op.drop_table("wallet")
    op.drop_index("ix_notification_user_id", table_name="notification")
    op.drop_table("notification")
    op.drop_index("ix_recentlocation_user_id", table_name="recentlocation")
    op.drop_table("recentlocation")
    op.drop_index("ix_earning_driver_id", table_name="earning")
    op.drop_table("earning")
    op.drop_table("payment")
    op.drop_index("uq_negotiation_pending_ride", table_name="negotiation")
    op.drop_index("ix_negotiation_ride_id", table_name="negotiation")
    op.drop_table("negotiation")
    op.drop_index("uq_ride_active_driver", table_name="ride")
    op.drop_index("uq_ride_active_rider", table_name="ride")
    op.drop_index("ix_ride_created_at", table_name="ride")
    op.drop_index("ix_ride_status", table_name="ride")
    op.drop_index("ix_ride_driver_id", table_name="ride")
    op.drop_index("ix_ride_user_id", table_name="ride")
    op.drop_table("ride")
    op.drop_index("ix_userpromo_user_id", table_name="userpromo")
    op.drop_table("userpromo")
    op.drop_table("promocode")
    op.drop_index("ix_vehicle_driver_id", table_name="vehicle")
    op.drop_table("vehicle")
    op.drop_table("driver")
    op.drop_table("user")
    for enum in (discount_type, payment_status, payment_method, negotiation_status,
                 ride_status, vehicle_status, account_status):
        enum.drop(op.get_bind(), checkfirst=True)
