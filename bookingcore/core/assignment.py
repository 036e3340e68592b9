from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidState, NotFound, UpstreamFailure, store_call
from ..models import (
    TEAM_MEMBER_ACTIVE,
    TERMINAL_SERVICE_REQUEST_STATUSES,
    WORKLOAD_STATUSES,
    ServiceRequest,
    ServiceRequestStatusEvent,
    TeamMember,
    utc_now_naive,
)
from ..settings_store import AssignmentStrategy, get_service_request_settings
from .cache import KeyValueCache
from .events import EventPublisher, get_publisher

logger = structlog.get_logger("bookingcore.assignment")

ROTATION_CACHE_KEY_PREFIX = "service-requests:auto-assign:last-member"
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Candidate:
    member_id: str
    name: str
    workload: int
    skill_match: bool


def rotation_key(tenant_id: int | None) -> str:
    return f"{ROTATION_CACHE_KEY_PREFIX}:{tenant_id if tenant_id is not None else 'default'}"


def select_load_based(
    candidates: list[Candidate], cache: KeyValueCache | None = None, tenant_id: int | None = None
) -> Candidate | None:
    if not candidates:
        return None
    return min(candidates, key=lambda c: (c.workload, c.member_id))


def select_skill_based(
    candidates: list[Candidate], cache: KeyValueCache | None = None, tenant_id: int | None = None
) -> Candidate | None:
    if not candidates:
        return None
    matches = [c for c in candidates if c.skill_match]
    return select_load_based(matches or candidates)


def select_round_robin(
    candidates: list[Candidate], cache: KeyValueCache | None = None, tenant_id: int | None = None
) -> Candidate | None:
    if not candidates:
        return None
    ordered = sorted(candidates, key=lambda c: c.member_id)
    if cache is None:
        return ordered[0]

    last_id = cache.get(rotation_key(tenant_id))
    ids = [c.member_id for c in ordered]
    # a stale pointer (member left the pool) restarts the rotation from the first id
    next_index = (ids.index(last_id) + 1) % len(ordered) if last_id in ids else 0
    return ordered[next_index]


def advance_rotation(cache: KeyValueCache, tenant_id: int | None, member_id: str) -> None:
    cache.set(rotation_key(tenant_id), member_id, settings.ROTATION_CACHE_TTL_SECONDS)


StrategyHandler = Callable[[list[Candidate], KeyValueCache | None, int | None], Candidate | None]

STRATEGY_HANDLERS: dict[AssignmentStrategy, StrategyHandler] = {
    AssignmentStrategy.LOAD_BASED: select_load_based,
    AssignmentStrategy.SKILL_BASED: select_skill_based,
    AssignmentStrategy.ROUND_ROBIN: select_round_robin,
}

_unhandled = set(AssignmentStrategy) - set(STRATEGY_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No assignment handler for {sorted(s.value for s in _unhandled)}")


def resolve_assignee(
    candidates: list[Candidate],
    strategy: AssignmentStrategy,
    cache: KeyValueCache | None,
    tenant_id: int | None,
) -> Candidate | None:
    return STRATEGY_HANDLERS[strategy](candidates, cache, tenant_id)


def _tenant_scoped() -> bool:
    return bool(settings.MULTI_TENANCY_ENABLED)


def list_assignable_members(db: Session, tenant_id: int | None) -> list[TeamMember]:
    stmt = select(TeamMember).where(
        TeamMember.status == TEAM_MEMBER_ACTIVE,
        TeamMember.is_available.is_(True),
    )
    if _tenant_scoped() and tenant_id is not None:
        stmt = stmt.where(TeamMember.tenant_id == tenant_id)
    with store_call("team_members.read"):
        return list(db.execute(stmt.order_by(TeamMember.id.asc())).scalars().all())


def workload_counts(db: Session, member_ids: list[str], tenant_id: int | None) -> dict[str, int]:
    if not member_ids:
        return {}
    stmt = (
        select(ServiceRequest.assigned_team_member_id, func.count(ServiceRequest.id))
        .where(
            ServiceRequest.assigned_team_member_id.in_(member_ids),
            ServiceRequest.status.in_(WORKLOAD_STATUSES),
        )
        .group_by(ServiceRequest.assigned_team_member_id)
    )
    if _tenant_scoped() and tenant_id is not None:
        stmt = stmt.where(ServiceRequest.tenant_id == tenant_id)
    with store_call("workload.read"):
        rows = db.execute(stmt).all()
    return {str(member_id): int(count) for member_id, count in rows}


def build_candidates(
    db: Session, request: ServiceRequest, members: list[TeamMember]
) -> list[Candidate]:
    category = request.service.category if request.service is not None else None
    counts = workload_counts(db, [m.id for m in members], request.tenant_id)
    return [
        Candidate(
            member_id=m.id,
            name=m.name,
            workload=counts.get(m.id, 0),
            skill_match=bool(category) and category in (m.specialties or []),
        )
        for m in members
    ]


def get_service_request(
    db: Session, service_request_id: str, tenant_id: int | None = None
) -> ServiceRequest:
    with store_call("service_request.read"):
        request = db.get(ServiceRequest, service_request_id)
    if request is None or (tenant_id is not None and request.tenant_id != tenant_id):
        raise NotFound("ServiceRequest", service_request_id)
    return request


def _apply_assignment(
    db: Session,
    request: ServiceRequest,
    member_id: str,
    status: str,
    assigned_by: str | None,
    now: datetime,
    only_if_unassigned: bool,
) -> bool:
    stmt = update(ServiceRequest).where(
        ServiceRequest.id == request.id,
        ServiceRequest.status.not_in(TERMINAL_SERVICE_REQUEST_STATUSES),
    )
    if only_if_unassigned:
        stmt = stmt.where(ServiceRequest.assigned_team_member_id.is_(None))
    stmt = stmt.values(
        assigned_team_member_id=member_id,
        assigned_at=now,
        assigned_by=assigned_by,
        status=status,
    )
    previous_status = request.status
    try:
        result = db.execute(stmt)
        if result.rowcount == 0:
            db.rollback()
            return False
        db.add(
            ServiceRequestStatusEvent(
                tenant_id=request.tenant_id,
                service_request_id=request.id,
                from_status=previous_status,
                to_status=status,
                actor=assigned_by or SYSTEM_ACTOR,
                note=f"assigned to {member_id}",
                created_at=now,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    return True


def auto_assign(
    db: Session,
    service_request_id: str,
    cache: KeyValueCache | None = None,
    publisher: EventPublisher | None = None,
    now: datetime | None = None,
    tenant_id: int | None = None,
) -> ServiceRequest:
    request = get_service_request(db, service_request_id, tenant_id)
    if request.status in TERMINAL_SERVICE_REQUEST_STATUSES:
        logger.info("auto_assign_skipped_closed", service_request_id=request.id, status=request.status)
        return request
    if request.assigned_team_member_id:
        return request

    config = get_service_request_settings(db, request.tenant_id, cache)
    if not config.auto_assign:
        return request

    members = list_assignable_members(db, request.tenant_id)
    if not members:
        logger.info("auto_assign_empty_pool", service_request_id=request.id, tenant_id=request.tenant_id)
        return request

    candidates = build_candidates(db, request, members)
    chosen = resolve_assignee(candidates, config.auto_assign_strategy, cache, request.tenant_id)
    if chosen is None:
        return request

    with store_call("service_request.assign"):
        applied = _apply_assignment(
            db,
            request,
            chosen.member_id,
            config.assignment_status,
            assigned_by=None,
            now=now or utc_now_naive(),
            only_if_unassigned=True,
        )
    if not applied:
        # another worker assigned or closed it between our read and write
        with store_call("service_request.read"):
            db.refresh(request)
        return request

    if config.auto_assign_strategy is AssignmentStrategy.ROUND_ROBIN and cache is not None:
        try:
            advance_rotation(cache, request.tenant_id, chosen.member_id)
        except UpstreamFailure as exc:
            # the assignment is committed; a stale pointer only repeats one pick
            logger.warning("rotation_pointer_not_saved", service_request_id=request.id, error=str(exc))

    logger.info(
        "service_request_auto_assigned",
        service_request_id=request.id,
        team_member_id=chosen.member_id,
        strategy=config.auto_assign_strategy.value,
        workload=chosen.workload,
    )
    (publisher or get_publisher()).emit_team_assignment(request.id, chosen.member_id)
    return request


def assign_manually(
    db: Session,
    service_request_id: str,
    team_member_id: str,
    actor: str | None = None,
    publisher: EventPublisher | None = None,
    now: datetime | None = None,
    tenant_id: int | None = None,
) -> ServiceRequest:
    request = get_service_request(db, service_request_id, tenant_id)
    if request.status in TERMINAL_SERVICE_REQUEST_STATUSES:
        raise InvalidState(f"Cannot assign a {request.status.lower()} service request")
    with store_call("team_member.read"):
        member = db.get(TeamMember, team_member_id)
    if member is None or (_tenant_scoped() and member.tenant_id != request.tenant_id):
        raise NotFound("TeamMember", team_member_id)

    with store_call("service_request.assign"):
        applied = _apply_assignment(
            db,
            request,
            member.id,
            "ASSIGNED",
            assigned_by=actor,
            now=now or utc_now_naive(),
            only_if_unassigned=False,
        )
    if not applied:
        raise InvalidState("Service request was closed before it could be assigned")
    logger.info(
        "service_request_assigned",
        service_request_id=request.id,
        team_member_id=member.id,
        actor=actor,
    )
    events = publisher or get_publisher()
    events.emit_team_assignment(request.id, member.id)
    events.emit_service_request_update(request.id, status="ASSIGNED")
    return request


def team_workload_summary(
    db: Session, tenant_id: int | None, max_concurrent: int = 3
) -> list[dict]:
    stmt = select(TeamMember)
    if _tenant_scoped() and tenant_id is not None:
        stmt = stmt.where(TeamMember.tenant_id == tenant_id)
    with store_call("team_members.read"):
        members = list(db.execute(stmt.order_by(TeamMember.id.asc())).scalars().all())
    counts = workload_counts(db, [m.id for m in members], tenant_id)
    capacity = max(1, int(max_concurrent))
    out: list[dict] = []
    for m in members:
        active = counts.get(m.id, 0)
        free = max(0, capacity - active)
        out.append(
            {
                "team_member_id": m.id,
                "name": m.name,
                "is_available": bool(m.is_available),
                "specialties": list(m.specialties or []),
                "active_assignments": active,
                "available_slots": free,
                "availability_pct": round(free / capacity * 100),
            }
        )
    return out
