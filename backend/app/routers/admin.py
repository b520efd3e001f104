import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..models import ReconciliationAuditLog, User
from ..schemas import (
    AuditLogEntryOut,
    AuditLogOut,
    AuditOut,
    AuditRequest,
    CleanupReportOut,
    CleanupRequest,
    RecomputeOut,
)
from ..exceptions import PlanNotFound, http_problem
from ..services.cleanup import execute_plan
from ..services.integrity import get_plan, run_integrity_audit
from ..services.ranking import recompute_all
from ..time_utils import coerce_utc
from .auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise http_problem(
            status_code=403,
            detail="forbidden",
            code="admin_forbidden",
        )
    return user


# POST /api/v0/admin/integrity/audit
@router.post("/integrity/audit", response_model=AuditOut)
async def integrity_audit(
    body: AuditRequest = AuditRequest(),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    plan = await run_integrity_audit(
        session,
        bulk_cluster_size=body.bulkClusterSize,
        same_pair_cluster_size=body.samePairClusterSize,
    )
    report = await execute_plan(session, plan, dry_run=True)
    logger.info("integrity audit %s requested by %s", plan.plan_id, user.username)
    return AuditOut.model_validate({"plan": plan.as_dict(), "report": report.as_dict()})


# POST /api/v0/admin/integrity/cleanup/{plan_id}
@router.post("/integrity/cleanup/{plan_id}", response_model=CleanupReportOut)
async def integrity_cleanup(
    plan_id: str,
    body: CleanupRequest = CleanupRequest(),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    plan = await get_plan(plan_id)
    if plan is None:
        raise PlanNotFound(plan_id)
    report = await execute_plan(session, plan, dry_run=body.dryRun, strict=body.strict)
    logger.info(
        "cleanup of plan %s (%s) requested by %s",
        plan_id,
        "dry run" if body.dryRun else "live",
        user.username,
    )
    return CleanupReportOut.model_validate(report.as_dict())


# POST /api/v0/admin/rankings/recompute
@router.post("/rankings/recompute", response_model=RecomputeOut)
async def rankings_recompute(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    buckets = await recompute_all(session)
    await session.commit()
    return RecomputeOut(buckets=buckets)


# GET /api/v0/admin/integrity/log
@router.get("/integrity/log", response_model=AuditLogOut)
async def integrity_log(
    plan_id: Optional[str] = Query(None, alias="planId"),
    player_id: Optional[str] = Query(None, alias="playerId"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require_admin),
):
    conditions = []
    if plan_id:
        conditions.append(ReconciliationAuditLog.plan_id == plan_id)
    if player_id:
        conditions.append(ReconciliationAuditLog.player_id == player_id)
    total = (
        await session.execute(
            select(func.count(ReconciliationAuditLog.id)).where(*conditions)
        )
    ).scalar_one()
    rows = (
        await session.execute(
            select(ReconciliationAuditLog)
            .where(*conditions)
            .order_by(ReconciliationAuditLog.created_at.desc(), ReconciliationAuditLog.id)
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()
    return AuditLogOut(
        entries=[
            AuditLogEntryOut(
                id=row.id,
                planId=row.plan_id,
                playerId=row.player_id,
                action=row.action,
                payload=row.payload,
                createdAt=coerce_utc(row.created_at),
            )
            for row in rows
        ],
        total=int(total or 0),
        limit=limit,
        offset=offset,
    )
