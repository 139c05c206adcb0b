"""create_rating_tables

Revision ID: 5b1e7c3d9a20
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "5b1e7c3d9a20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create companies, brokerages and stock_ratings."""
    op.create_table(
        "companies",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("ticker", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("market_cap", sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column("sector", sa.String(length=100), nullable=True),
        sa.Column("exchange", sa.String(length=50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_companies")),
    )
    op.create_index("idx_companies_ticker", "companies", ["ticker"])

    op.create_table(
        "brokerages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("country", sa.String(length=3), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_brokerages")),
    )
    op.create_index("idx_brokerages_name", "brokerages", ["name"])

    op.create_table(
        "stock_ratings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("brokerage_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("rating_from", sa.String(length=100), nullable=True),
        sa.Column("rating_to", sa.String(length=100), nullable=True),
        sa.Column("target_from", sa.String(length=50), nullable=True),
        sa.Column("target_to", sa.String(length=50), nullable=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="api"),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["company_id"],
            ["companies.id"],
            name=op.f("fk_stock_ratings_company_id_companies"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["brokerage_id"],
            ["brokerages.id"],
            name=op.f("fk_stock_ratings_brokerage_id_brokerages"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_stock_ratings")),
    )
    op.create_index(
        "idx_stock_ratings_dedup",
        "stock_ratings",
        ["company_id", "brokerage_id", "event_time"],
    )
    op.create_index("idx_stock_ratings_brokerage", "stock_ratings", ["brokerage_id"])
    op.create_index("idx_stock_ratings_event_time", "stock_ratings", ["event_time"])


def downgrade() -> None:
    """Drop the rating tables."""
    op.drop_index("idx_stock_ratings_event_time", table_name="stock_ratings")
    op.drop_index("idx_stock_ratings_brokerage", table_name="stock_ratings")
    op.drop_index("idx_stock_ratings_dedup", table_name="stock_ratings")
    op.drop_table("stock_ratings")
    op.drop_index("idx_brokerages_name", table_name="brokerages")
    op.drop_table("brokerages")
    op.drop_index("idx_companies_ticker", table_name="companies")
    op.drop_table("companies")
