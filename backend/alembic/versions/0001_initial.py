from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False, unique=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        "player",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_player_name_lower",
        "player",
        [sa.text("lower(name)")],
        unique=True,
    )
    op.create_table(
        "match",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("format", sa.String(), nullable=False),
        sa.Column("match_type", sa.String(), nullable=False),
        sa.Column("event_tier", sa.String(), nullable=False),
        sa.Column("division", sa.String(), nullable=False),
        sa.Column("skill_tier", sa.String(), nullable=False, server_default="open"),
        sa.Column("points_to", sa.Integer(), nullable=False, server_default="11"),
        sa.Column("best_of", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("games", sa.JSON(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("validation_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_reason", sa.String(), nullable=True),
    )
    op.create_index("ix_match_recorded_at", "match", ["recorded_at"])
    op.create_index("ix_match_bucket", "match", ["format", "division", "skill_tier"])
    op.create_table(
        "match_participant",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column(
            "player_ids",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("side", sa.String(), nullable=False),
    )
    op.create_index("ix_match_participant_match_id", "match_participant", ["match_id"])
    op.create_table(
        "ranking_bucket",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("format", sa.String(), nullable=False),
        sa.Column("age_division", sa.String(), nullable=False),
        sa.Column("skill_tier", sa.String(), nullable=False),
        sa.Column("ranking_points", sa.Float(), nullable=False, server_default="0"),
        sa.Column("match_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_matches", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "player_id",
            "format",
            "age_division",
            "skill_tier",
            name="uq_ranking_bucket_player_key",
        ),
    )
    op.create_table(
        "bucket_match",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "bucket_id",
            sa.String(),
            sa.ForeignKey("ranking_bucket.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("points_delta", sa.Float(), nullable=False),
        sa.Column("won", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("bucket_id", "match_id", name="uq_bucket_match_bucket_match"),
    )
    op.create_index("ix_bucket_match_match_id", "bucket_match", ["match_id"])
    op.create_table(
        "xp_ledger_entry",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "player_id", "match_id", "source", name="uq_xp_ledger_player_match_source"
        ),
    )
    op.create_index("ix_xp_ledger_entry_player_id", "xp_ledger_entry", ["player_id"])
    op.create_index("ix_xp_ledger_entry_match_id", "xp_ledger_entry", ["match_id"])
    op.create_table(
        "player_xp",
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), primary_key=True),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_table(
        "reconciliation_audit_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("player_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_reconciliation_audit_log_plan_id", "reconciliation_audit_log", ["plan_id"]
    )
    op.create_index(
        "ix_reconciliation_audit_log_player_id", "reconciliation_audit_log", ["player_id"]
    )


def downgrade():
    op.drop_table("reconciliation_audit_log")
    op.drop_table("player_xp")
    op.drop_table("xp_ledger_entry")
    op.drop_table("bucket_match")
    op.drop_table("ranking_bucket")
    op.drop_table("match_participant")
    op.drop_index("ix_match_bucket", table_name="match")
    op.drop_index("ix_match_recorded_at", table_name="match")
    op.drop_table("match")
    op.drop_index("uq_player_name_lower", table_name="player")
    op.drop_table("player")
    op.drop_table("user")
