from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Optional
from datetime import datetime, date, timedelta, timezone
from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from stockroom.config import get_settings
from stockroom.db import get_session
from stockroom.error import abort
from stockroom.models import ActivityLog
from stockroom.schemas import ActivityAction, ActivityListResponse, EntityType, ListSort

router = APIRouter(prefix="/activities", tags=["activities"])


def _get_zone(tz_str: Optional[str]) -> Optional[ZoneInfo]:
    if not tz_str or not tz_str.strip():
        return None
    tz_str = tz_str.strip()
    try:
        return ZoneInfo(tz_str)
    except (ZoneInfoNotFoundError, ValueError):
        abort(400, "BAD_REQUEST", f"invalid tz: {tz_str} (e.g. Asia/Shanghai / Europe/Berlin / UTC)")


def _parse_dt_or_date(s: str, *, is_end: bool, assume_tz: Optional[ZoneInfo]) -> datetime:
    """
    Accepts:
      - "YYYY-MM-DD"
      - ISO datetime: "YYYY-MM-DDTHH:MM:SS", "...Z", "...+08:00"
    Rules:
      - date: start = local 00:00:00, end = next day 00:00:00 (half-open)
      - naive input is read in assume_tz, or UTC when that is missing too
      - returns naive UTC, the same shape stored in created_at
    """
    s = (s or "").strip()
    if not s:
        abort(400, "BAD_REQUEST", "start/end must not be empty")

    # 1) 纯日期
    if len(s) == 10 and s[4] == "-" and s[7] == "-":
        try:
            d = date.fromisoformat(s)
        except ValueError:
            abort(400, "BAD_REQUEST", f"bad date: {s}, expected YYYY-MM-DD")

        local_dt = datetime(d.year, d.month, d.day)
        if is_end:
            local_dt = local_dt + timedelta(days=1)
        local_dt = local_dt.replace(tzinfo=assume_tz or timezone.utc)
        return local_dt.astimezone(timezone.utc).replace(tzinfo=None)

    # 2) datetime（兼容 Z）
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        abort(400, "BAD_REQUEST", f"bad datetime: {s}, e.g. 2026-01-12T08:30:00 or 2026-01-12T08:30:00Z")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=assume_tz or timezone.utc)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("", response_model=ActivityListResponse)
def list_activities(
    entity_type: Optional[EntityType] = Query(None, description="按实体类型过滤（可选）"),
    entity_id: Optional[str] = Query(None, min_length=1, max_length=50),
    action: Optional[ActivityAction] = Query(None, description="按动作过滤（可选）"),
    actor_name: Optional[str] = Query(None, min_length=1, max_length=100, description="按操作人过滤（可选）"),
    tz: Optional[str] = Query(None, description="start/end 不带时区时按该时区解释，例：Asia/Shanghai / UTC"),
    start: Optional[str] = Query(None, description="例：2026-01-12 或 2026-01-12T08:30:00"),
    end: Optional[str] = Query(None, description="左闭右开。例：2026-01-13 或 2026-01-12T20:00:00"),
    sort: ListSort = Query(ListSort.created_desc),
    limit: int = Query(get_settings().default_page_limit, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
):
    conds = []
    if entity_type is not None:
        conds.append(ActivityLog.entity_type == entity_type.value)
    if entity_id is not None:
        conds.append(ActivityLog.entity_id == entity_id.strip())
    if action is not None:
        conds.append(ActivityLog.action == action.value)
    if actor_name is not None and actor_name.strip():
        conds.append(ActivityLog.actor_name == actor_name.strip())

    zone = _get_zone(tz)
    start_dt = _parse_dt_or_date(start, is_end=False, assume_tz=zone) if start else None
    end_dt = _parse_dt_or_date(end, is_end=True, assume_tz=zone) if end else None
    if start_dt is not None and end_dt is not None and start_dt >= end_dt:
        abort(400, "BAD_REQUEST", "start must be earlier than end")
    if start_dt is not None:
        conds.append(ActivityLog.created_at >= start_dt)
    if end_dt is not None:
        conds.append(ActivityLog.created_at < end_dt)

    stmt = select(ActivityLog)
    count_stmt = select(func.count()).select_from(ActivityLog)
    if conds:
        stmt = stmt.where(*conds)
        count_stmt = count_stmt.where(*conds)

    # ✅ sort: 统一入口切换 order_by
    if sort == ListSort.id_desc:
        stmt = stmt.order_by(ActivityLog.id.desc())
    elif sort == ListSort.id_asc:
        stmt = stmt.order_by(ActivityLog.id.asc())
    elif sort == ListSort.created_asc:
        stmt = stmt.order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
    else:
        stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())

    total = session.exec(count_stmt).one()
    items = session.exec(stmt.offset(offset).limit(limit)).all()
    return {"items": items, "total": total, "limit": limit, "offset": offset}
