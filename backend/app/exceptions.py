from fastapi import HTTPException
from pydantic import BaseModel
from typing import Any, Optional


class ProblemDetail(BaseModel):
    """RFC 7807 compliant error response."""

    type: str = "about:blank"
    title: str
    detail: Optional[str] = None
    status: int
    instance: Optional[str] = None
    code: str


class DomainException(Exception):
    """Base class for domain-specific exceptions."""

    def __init__(
        self,
        status_code: int,
        title: str,
        *,
        code: str,
        detail: str | None = None,
        type_: str = "about:blank",
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type = type_
        self.code = code


class PlayerAlreadyExists(DomainException):
    def __init__(self, name: str) -> None:
        super().__init__(
            status_code=409,
            title="Player exists",
            detail=f"player name '{name}' already exists",
            code="player_exists",
        )


class PlayerNotFound(DomainException):
    def __init__(self, player_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Player not found",
            detail=f"player '{player_id}' not found",
            code="player_not_found",
        )


class MatchNotFound(DomainException):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Match not found",
            detail=f"match '{match_id}' not found",
            code="match_not_found",
        )


class PlanNotFound(DomainException):
    def __init__(self, plan_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Reconciliation plan not found",
            detail=f"plan '{plan_id}' not found or expired; run a new audit",
            code="plan_not_found",
        )


class MatchConflictError(DomainException):
    """An exact copy of an already committed match was submitted."""

    def __init__(self, existing_match_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Duplicate match",
            detail=(
                "an identical match with the same participants, score and "
                f"timestamp already exists ({existing_match_id})"
            ),
            code="match_duplicate",
        )
        self.existing_match_id = existing_match_id


class MatchStateError(DomainException):
    def __init__(self, match_id: str, status: str, action: str) -> None:
        super().__init__(
            status_code=409,
            title="Invalid match state",
            detail=f"cannot {action} match '{match_id}' in status '{status}'",
            code="match_invalid_state",
        )


class ConcurrentUpdateError(DomainException):
    """Another writer updated the same ranking bucket first."""

    def __init__(self, detail: str = "ranking bucket was updated concurrently; retry") -> None:
        super().__init__(
            status_code=409,
            title="Concurrent update",
            detail=detail,
            code="ranking_concurrent_update",
        )


class LedgerIntegrityError(DomainException):
    """A reconciliation step cannot be completed safely and needs manual review."""

    def __init__(self, detail: str, *, player_ids: Optional[list[str]] = None) -> None:
        super().__init__(
            status_code=409,
            title="Ledger integrity error",
            detail=detail,
            code="ledger_integrity_error",
        )
        self.player_ids = list(player_ids or [])


class RecomputationMismatch(DomainException):
    """Recomputed aggregates disagree with the expected post-cleanup state."""

    def __init__(
        self,
        player_id: str,
        detail: str,
        *,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            status_code=500,
            title="Recomputation mismatch",
            detail=f"player '{player_id}': {detail}",
            code="ranking_recomputation_mismatch",
        )
        self.player_id = player_id
        self.before = before or {}
        self.after = after or {}


def http_problem(
    status_code: int,
    detail: str,
    code: str,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """Create an HTTPException with an attached problem code."""

    exc = HTTPException(status_code=status_code, detail=detail, headers=headers)
    setattr(exc, "code", code)
    return exc
