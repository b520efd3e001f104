from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Float,
    Boolean,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from .db import Base
from .time_utils import utcnow


class User(Base):
    __tablename__ = "user"
    id = Column(String, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)


class Player(Base):
    __tablename__ = "player"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("user.id"), nullable=True)
    name = Column(String, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("uq_player_name_lower", func.lower(name), unique=True),
    )


class Match(Base):
    """A recorded match. Read-only once validated, except for soft deletion
    by the cleanup executor when the record is a proven duplicate."""

    __tablename__ = "match"
    id = Column(String, primary_key=True)
    format = Column(String, nullable=False)  # "singles" | "doubles"
    match_type = Column(String, nullable=False)  # "casual" | "league" | "tournament"
    event_tier = Column(String, nullable=False)
    division = Column(String, nullable=False)
    skill_tier = Column(String, nullable=False, default="open")
    points_to = Column(Integer, nullable=False, default=11)
    best_of = Column(Integer, nullable=False, default=3)
    games = Column(JSON, nullable=False)  # [{"A": 11, "B": 7}, ...]
    location = Column(String, nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    validation_status = Column(String, nullable=False, default="pending")
    validated_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_reason = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_match_recorded_at", "recorded_at"),
        Index("ix_match_bucket", "format", "division", "skill_tier"),
    )


class MatchParticipant(Base):
    __tablename__ = "match_participant"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False, index=True)
    side = Column(String, nullable=False)  # "A" | "B"
    # Ordered by team slot: index 0 is the first player, index 1 the partner.
    player_ids = Column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )


class RankingBucket(Base):
    """Aggregate ranking state for one player in one (format, division, tier)."""

    __tablename__ = "ranking_bucket"
    id = Column(String, primary_key=True)
    player_id = Column(String, ForeignKey("player.id"), nullable=False)
    format = Column(String, nullable=False)
    age_division = Column(String, nullable=False)
    skill_tier = Column(String, nullable=False)
    ranking_points = Column(Float, nullable=False, default=0.0)
    match_count = Column(Integer, nullable=False, default=0)
    win_count = Column(Integer, nullable=False, default=0)
    required_matches = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint(
            "player_id",
            "format",
            "age_division",
            "skill_tier",
            name="uq_ranking_bucket_player_key",
        ),
    )


class BucketMatch(Base):
    """Applied-matches set of a bucket; one row per match counted in it."""

    __tablename__ = "bucket_match"
    id = Column(String, primary_key=True)
    bucket_id = Column(
        String, ForeignKey("ranking_bucket.id", ondelete="CASCADE"), nullable=False
    )
    match_id = Column(String, ForeignKey("match.id"), nullable=False, index=True)
    points_delta = Column(Float, nullable=False)
    won = Column(Boolean, nullable=False, default=False)
    applied_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("bucket_id", "match_id", name="uq_bucket_match_bucket_match"),
    )


class XPLedgerEntry(Base):
    __tablename__ = "xp_ledger_entry"
    id = Column(String, primary_key=True)
    player_id = Column(String, ForeignKey("player.id"), nullable=False, index=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "player_id", "match_id", "source", name="uq_xp_ledger_player_match_source"
        ),
    )


class PlayerXP(Base):
    __tablename__ = "player_xp"
    player_id = Column(String, ForeignKey("player.id"), primary_key=True)
    total = Column(Integer, nullable=False, default=0)


class ReconciliationAuditLog(Base):
    __tablename__ = "reconciliation_audit_log"
    id = Column(String, primary_key=True)
    plan_id = Column(String, nullable=True, index=True)
    player_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
