"""Create billing_records and sequence_counters

Revision ID: 20261017_billing_records
Revises:
Create Date: 2026-10-17 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261017_billing_records"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "billing_records",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("kind", sa.String(2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("access_key", sa.String(49), unique=True),
        sa.Column("sequence", sa.String(9)),
        sa.Column("document_number", sa.String(17)),
        sa.Column("emission_date", sa.Date(), nullable=False),
        sa.Column("buyer_identification", sa.String(20), nullable=False, server_default=""),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("authorization_number", sa.String(64)),
        sa.Column("authorization_timestamp", sa.DateTime(timezone=True)),
        sa.Column("messages_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("signed_xml", sa.Text()),
        sa.Column("authorized_xml", sa.Text()),
        sa.Column("original_id", sa.String(64)),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_billing_records_status", "billing_records", ["status"])
    op.create_index("ix_billing_records_kind_sequence", "billing_records", ["kind", "sequence"])

    op.create_table(
        "sequence_counters",
        sa.Column("name", sa.String(32), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
    )
    op.bulk_insert(
        sa.table("sequence_counters", sa.column("name", sa.String), sa.column("value", sa.Integer)),
        [{"name": "invoice", "value": 0}, {"name": "credit_note", "value": 0}],
    )


def downgrade() -> None:
    op.drop_table("sequence_counters")
    op.drop_index("ix_billing_records_kind_sequence", table_name="billing_records")
    op.drop_index("ix_billing_records_status", table_name="billing_records")
    op.drop_table("billing_records")
