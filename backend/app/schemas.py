from typing import Any, Dict, List, Literal, Optional
from collections.abc import Sequence
from datetime import datetime
from pydantic import BaseModel, Field, model_validator, field_validator, ConfigDict

from .time_utils import require_utc


class PlayerCreate(BaseModel):
    name: str = Field(
        ..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9 '-]+$"
    )
    userId: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not isinstance(value, str):
            raise ValueError("name must be a string")
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("name must not be empty")
        return trimmed


class PlayerOut(BaseModel):
    id: str
    name: str
    userId: Optional[str] = None


class XPEntryOut(BaseModel):
    id: str
    matchId: Optional[str] = None
    amount: int
    source: str
    createdAt: datetime
    voided: bool = False


class PlayerXPOut(BaseModel):
    playerId: str
    lifetimeXp: int
    level: int
    levelName: str
    levelXp: int
    nextLevelXp: Optional[int] = None
    progress: int
    entries: List[XPEntryOut] = Field(default_factory=list)


class Participant(BaseModel):
    side: Literal["A", "B"]
    playerIds: List[str]


def _normalize_participants_payload(data: Any) -> Any:
    if not isinstance(data, dict) or "participants" not in data:
        return data

    raw_parts = data["participants"]
    if raw_parts is None:
        return data

    if not isinstance(raw_parts, list):
        raw_parts = list(raw_parts)

    seen_sides: set[str] = set()
    normalized_parts: list[dict[str, Any]] = []

    for part in raw_parts:
        if isinstance(part, BaseModel):
            part_data = part.model_dump()
        elif isinstance(part, dict):
            part_data = dict(part)
        else:
            raise ValueError(
                "participants must be provided as mappings or Pydantic models"
            )

        side = part_data.get("side")
        normalized_side = side.upper() if isinstance(side, str) else side
        side_key = normalized_side if isinstance(normalized_side, str) else str(normalized_side)

        if side_key in seen_sides:
            raise ValueError("participants must have unique sides")
        seen_sides.add(side_key)

        players = part_data.get("playerIds")
        if isinstance(players, list):
            player_list = players
        elif isinstance(players, Sequence) and not isinstance(players, (str, bytes)):
            player_list = list(players)
        elif players is None:
            player_list = []
        else:
            player_list = players  # allow Pydantic to flag incorrect types

        if not player_list:
            raise ValueError("participants must include at least one player")

        part_data["side"] = normalized_side
        part_data["playerIds"] = player_list
        normalized_parts.append(part_data)

    return {**data, "participants": normalized_parts}


class GameScoreIn(BaseModel):
    A: int
    B: int

    @model_validator(mode="before")
    def _coerce(cls, value: Any) -> Dict[str, int]:
        """Allow incoming game scores to be provided as tuples or objects."""
        if isinstance(value, dict):
            return value
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return {"A": value[0], "B": value[1]}
        if hasattr(value, "A") or hasattr(value, "B"):
            return {"A": getattr(value, "A", None), "B": getattr(value, "B", None)}
        raise ValueError("Game scores must be a mapping or 2-item tuple/list.")


class MatchCreate(BaseModel):
    participants: List[Participant]
    games: List[GameScoreIn]
    format: str
    matchType: str = "casual"
    eventTier: str = "local"
    division: str = "open"
    skillTier: str = "open"
    pointsTo: Optional[int] = None
    bestOf: Optional[int] = None
    recordedAt: Optional[datetime] = None
    location: Optional[str] = None

    @field_validator("recordedAt")
    def _normalize_recorded_at(cls, v: datetime | None) -> datetime | None:
        return require_utc(v, field_name="recordedAt")

    @model_validator(mode="before")
    def _validate_participants(cls, data: Any) -> Any:
        return _normalize_participants_payload(data)

    def side(self, side: str) -> List[str]:
        for part in self.participants:
            if part.side == side:
                return list(part.playerIds)
        return []


class RewardOut(BaseModel):
    playerId: str
    xpDelta: int
    rankingPointDelta: float
    won: bool
    level: Optional[int] = None
    levelUp: bool = False


class MatchRecordedOut(BaseModel):
    matchId: str
    status: str
    rewards: List[RewardOut] = Field(default_factory=list)


class ParticipantOut(BaseModel):
    side: str
    playerIds: List[str]


class MatchOut(BaseModel):
    id: str
    format: str
    matchType: str
    eventTier: str
    division: str
    skillTier: str
    pointsTo: int
    bestOf: int
    games: List[GameScoreIn]
    location: Optional[str] = None
    recordedAt: datetime
    createdAt: Optional[datetime] = None
    validationStatus: str
    participants: List[ParticipantOut]


class RankingPositionOut(BaseModel):
    playerId: str
    format: str
    division: str
    tier: str
    rankingPoints: float
    matchCount: int
    requiredMatches: int
    isRanked: bool
    progress: str


class RankingBucketsOut(BaseModel):
    playerId: str
    buckets: List[RankingPositionOut]


class LeaderboardEntryOut(BaseModel):
    rank: int
    playerId: str
    playerName: str
    rankingPoints: float
    matchCount: int
    winCount: int


class LeaderboardOut(BaseModel):
    format: str
    division: str
    tier: str
    leaders: List[LeaderboardEntryOut]
    total: int
    limit: int
    offset: int


class BucketKeyOut(BaseModel):
    format: str
    division: str
    tier: str


class ClusterEvidenceOut(BaseModel):
    recordedAtMs: int
    clusterSize: int
    sharedMillisecondCount: int
    distinctPlayers: int
    signature: str
    reason: str


class DuplicateFindingOut(BaseModel):
    keeperId: str
    removeIds: List[str]
    playerIds: List[str]
    bucket: Optional[BucketKeyOut] = None
    evidence: ClusterEvidenceOut


class ReconciliationPlanOut(BaseModel):
    planId: str
    generatedAt: datetime
    recordsScanned: int
    candidateClusters: int
    removeCount: int
    affectedPlayerIds: List[str]
    settings: Dict[str, int]
    findings: List[DuplicateFindingOut]


class PlayerCleanupOut(BaseModel):
    playerId: str
    matchesBefore: int
    matchesAfter: int
    pointsBefore: float
    pointsAfter: float
    xpBefore: int
    xpAfter: int
    removedMatchIds: List[str]
    status: Literal["applied", "planned", "failed", "skipped"]
    error: Optional[str] = None


class CleanupReportOut(BaseModel):
    planId: str
    dryRun: bool
    strict: bool
    halted: bool
    removedCount: int
    skippedMatchIds: List[str]
    totals: Dict[str, int]
    players: List[PlayerCleanupOut]


class AuditRequest(BaseModel):
    dryRun: bool = True
    bulkClusterSize: Optional[int] = Field(default=None, ge=2)
    samePairClusterSize: Optional[int] = Field(default=None, ge=2)

    @field_validator("dryRun")
    @classmethod
    def _audit_is_read_only(cls, value: bool) -> bool:
        if not value:
            raise ValueError(
                "the audit never modifies the ledger; apply its plan through "
                "/admin/integrity/cleanup/{planId}"
            )
        return value


class AuditOut(BaseModel):
    plan: ReconciliationPlanOut
    report: CleanupReportOut


class CleanupRequest(BaseModel):
    dryRun: bool = True
    strict: Optional[bool] = None


class RecomputeOut(BaseModel):
    buckets: int


class AuditLogEntryOut(BaseModel):
    id: str
    planId: Optional[str] = None
    playerId: Optional[str] = None
    action: str
    payload: Optional[Dict[str, Any]] = None
    createdAt: datetime


class AuditLogOut(BaseModel):
    entries: List[AuditLogEntryOut]
    total: int
    limit: int
    offset: int


class UserOut(BaseModel):
    """Public user information."""
    id: str
    username: str
    isAdmin: bool
