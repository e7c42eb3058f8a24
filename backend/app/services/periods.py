from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.exceptions import ResourceNotFoundError, SchedulerError
from app.models.period import Period
from app.models.school import School
from app.models.school_class import SchoolClass
from app.models.timetable import TimetableSlot
from app.models.user import User
from app.schemas.timetable import PeriodCreate, PeriodUpdate, parse_time_to_minutes
from app.services.audit import log_activity
from app.services.schedule_locks import get_schedule_locks
from app.services.timetable_engine import PeriodSpec, resolve_period_duration

logger = logging.getLogger(__name__)


def list_periods(db: Session, school_id: str) -> list[Period]:
    return list(
        db.execute(select(Period).where(Period.school_id == school_id).order_by(Period.order)).scalars()
    )


def to_period_spec(period: Period) -> PeriodSpec:
    return PeriodSpec(
        id=period.id,
        name=period.name,
        start_time=period.start_time,
        end_time=period.end_time,
        order=period.order,
        is_break=period.is_break,
    )


def load_period_specs(db: Session, school_id: str) -> list[PeriodSpec]:
    return [to_period_spec(period) for period in list_periods(db, school_id)]


def school_period_duration(school: School, periods: list[PeriodSpec]) -> int:
    return resolve_period_duration(
        periods,
        override_minutes=school.period_duration_minutes,
        default_minutes=get_settings().default_period_duration_minutes,
    )


def get_period(db: Session, school_id: str, period_id: str) -> Period:
    period = db.get(Period, period_id)
    if period is None or period.school_id != school_id:
        raise ResourceNotFoundError("Period", period_id)
    return period


def _ensure_order_free(db: Session, school_id: str, order: int, exclude_id: str | None = None) -> None:
    query = select(Period).where(Period.school_id == school_id, Period.order == order)
    if exclude_id is not None:
        query = query.where(Period.id != exclude_id)
    if db.execute(query).scalar_one_or_none() is not None:
        raise SchedulerError(f"Another period already uses order {order}", details={"order": order})


def _ensure_teaching_capacity(teaching_count: int) -> None:
    limit = get_settings().max_periods_per_day
    if teaching_count > limit:
        raise SchedulerError(
            f"At most {limit} teaching periods per day are supported",
            details={"teaching_periods": teaching_count, "limit": limit},
        )


def create_period(db: Session, school: School, payload: PeriodCreate, *, actor: User | None = None) -> Period:
    with get_schedule_locks().school_exclusive(school.id, get_settings().schedule_lock_timeout_seconds):
        try:
            _ensure_order_free(db, school.id, payload.order)
            if not payload.is_break:
                teaching = sum(1 for item in list_periods(db, school.id) if not item.is_break)
                _ensure_teaching_capacity(teaching + 1)
            period = Period(school_id=school.id, **payload.model_dump())
            db.add(period)
            db.flush()
            log_activity(
                db,
                user=actor,
                action="timetable.period.create",
                entity_type="period",
                entity_id=period.id,
                details={"name": period.name, "order": period.order},
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(period)
    return period


def update_period(
    db: Session,
    school: School,
    period_id: str,
    payload: PeriodUpdate,
    *,
    actor: User | None = None,
) -> Period:
    with get_schedule_locks().school_exclusive(school.id, get_settings().schedule_lock_timeout_seconds):
        try:
            period = get_period(db, school.id, period_id)
            data = payload.model_dump(exclude_unset=True, exclude_none=True)
            if "order" in data:
                _ensure_order_free(db, school.id, data["order"], exclude_id=period.id)

            start = data.get("start_time", period.start_time)
            end = data.get("end_time", period.end_time)
            if parse_time_to_minutes(end) <= parse_time_to_minutes(start):
                raise SchedulerError(
                    "end_time must be after start_time", details={"start_time": start, "end_time": end}
                )

            becomes_break = data.get("is_break", period.is_break)
            if period.is_break and not becomes_break:
                teaching = sum(1 for item in list_periods(db, school.id) if not item.is_break)
                _ensure_teaching_capacity(teaching + 1)
            if becomes_break and not period.is_break:
                # Break periods are never assignable.
                cleared = db.execute(delete(TimetableSlot).where(TimetableSlot.period_id == period.id)).rowcount
                if cleared:
                    logger.warning(
                        "PERIOD BECAME BREAK | school_id=%s | period_id=%s | cleared_slots=%s",
                        school.id,
                        period.id,
                        cleared,
                    )

            for key, value in data.items():
                setattr(period, key, value)
            if data:
                log_activity(
                    db,
                    user=actor,
                    action="timetable.period.update",
                    entity_type="period",
                    entity_id=period.id,
                    details=data,
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(period)
    return period


def delete_period(db: Session, school: School, period_id: str, *, actor: User | None = None) -> None:
    with get_schedule_locks().school_exclusive(school.id, get_settings().schedule_lock_timeout_seconds):
        try:
            period = get_period(db, school.id, period_id)
            db.execute(delete(TimetableSlot).where(TimetableSlot.period_id == period.id))
            db.delete(period)
            log_activity(
                db,
                user=actor,
                action="timetable.period.delete",
                entity_type="period",
                entity_id=period_id,
                details={"name": period.name},
            )
            db.commit()
        except Exception:
            db.rollback()
            raise


def replace_periods(
    db: Session,
    school: School,
    periods: list[PeriodCreate],
    *,
    actor: User | None = None,
) -> list[Period]:
    """Swap the whole period catalog. Every timetable slot of the school is dropped."""
    _ensure_teaching_capacity(sum(1 for item in periods if not item.is_break))
    with get_schedule_locks().school_exclusive(school.id, get_settings().schedule_lock_timeout_seconds):
        try:
            class_ids = list(db.execute(select(SchoolClass.id).where(SchoolClass.school_id == school.id)).scalars())
            cleared = db.execute(delete(TimetableSlot).where(TimetableSlot.class_id.in_(class_ids))).rowcount
            db.execute(delete(Period).where(Period.school_id == school.id))
            db.flush()
            for item in periods:
                db.add(Period(school_id=school.id, **item.model_dump()))
            log_activity(
                db,
                user=actor,
                action="timetable.periods.replace",
                entity_type="school",
                entity_id=school.id,
                details={"periods": len(periods), "cleared_slots": cleared},
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("PERIOD REPLACE FAILED | school_id=%s", school.id)
            raise
    logger.info(
        "PERIODS REPLACED | school_id=%s | periods=%s | cleared_slots=%s",
        school.id,
        len(periods),
        cleared,
    )
    return list_periods(db, school.id)
