"""Create conversation session table keyed by agency and sender phone."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversation_sessions",
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("from_phone_e164", sa.String(length=32), nullable=False),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
        sa.UniqueConstraint("agency_id", "from_phone_e164", name="uq_conversation_sessions_agency_phone"),
    )
    op.create_index("ix_conversation_sessions_agency_id", "conversation_sessions", ["agency_id"], unique=False)
    op.create_index("ix_conversation_sessions_updated_at", "conversation_sessions", ["updated_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_conversation_sessions_updated_at", table_name="conversation_sessions")
    op.drop_index("ix_conversation_sessions_agency_id", table_name="conversation_sessions")
    op.drop_table("conversation_sessions")
