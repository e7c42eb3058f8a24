from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import ResourceNotFoundError
from app.models.class_subject import ClassSubject
from app.models.school import School
from app.models.school_class import SchoolClass
from app.models.subject import Subject
from app.models.user import User
from app.schemas.timetable import (
    AllocationBulkItem,
    AllocationListOut,
    AllocationOut,
    AllocationValidationOut,
)
from app.services.audit import log_activity
from app.services.periods import load_period_specs, school_period_duration
from app.services.timetable_engine import AllocationSpec, hours_to_periods_needed, validate_allocation_capacity

logger = logging.getLogger(__name__)


def get_school_class(db: Session, school_id: str, class_id: str) -> SchoolClass:
    school_class = db.get(SchoolClass, class_id)
    if school_class is None or school_class.school_id != school_id:
        raise ResourceNotFoundError("Class", class_id)
    return school_class


def list_school_classes(db: Session, school_id: str) -> list[SchoolClass]:
    """Classes in scheduling priority order: grade, section, name."""
    return list(
        db.execute(
            select(SchoolClass)
            .where(SchoolClass.school_id == school_id)
            .order_by(
                SchoolClass.grade_level.is_(None),
                SchoolClass.grade_level,
                SchoolClass.section,
                SchoolClass.name,
                SchoolClass.id,
            )
        ).scalars()
    )


def load_class_subjects(db: Session, class_id: str) -> list[ClassSubject]:
    return list(
        db.execute(
            select(ClassSubject)
            .where(ClassSubject.class_id == class_id)
            .order_by(ClassSubject.sequence, ClassSubject.id)
        ).scalars()
    )


def to_allocation_spec(class_subject: ClassSubject) -> AllocationSpec:
    return AllocationSpec(
        id=class_subject.id,
        subject_id=class_subject.subject_id,
        teacher_id=class_subject.teacher_id,
        hours_per_week=float(class_subject.hours_per_week or 0),
    )


def _get_class_subject(db: Session, school_id: str, class_subject_id: str) -> ClassSubject:
    class_subject = db.get(ClassSubject, class_subject_id)
    if class_subject is None:
        raise ResourceNotFoundError("Class subject", class_subject_id)
    # Scope through the owning class so other schools' rows stay invisible.
    school_class = db.get(SchoolClass, class_subject.class_id)
    if school_class is None or school_class.school_id != school_id:
        raise ResourceNotFoundError("Class subject", class_subject_id)
    return class_subject


def describe_allocations(
    db: Session,
    class_subjects: list[ClassSubject],
    period_duration_minutes: int,
) -> list[AllocationOut]:
    subject_ids = {item.subject_id for item in class_subjects}
    teacher_ids = {item.teacher_id for item in class_subjects if item.teacher_id}
    subjects = {
        subject.id: subject
        for subject in db.execute(select(Subject).where(Subject.id.in_(subject_ids))).scalars()
    } if subject_ids else {}
    teachers = {
        user.id: user for user in db.execute(select(User).where(User.id.in_(teacher_ids))).scalars()
    } if teacher_ids else {}

    described = []
    for item in class_subjects:
        subject = subjects.get(item.subject_id)
        teacher = teachers.get(item.teacher_id) if item.teacher_id else None
        hours = float(item.hours_per_week or 0)
        described.append(
            AllocationOut(
                id=item.id,
                class_id=item.class_id,
                subject_id=item.subject_id,
                subject_name=subject.name if subject else "Unknown",
                teacher_id=item.teacher_id,
                teacher_name=teacher.full_name if teacher else None,
                hours_per_week=hours,
                periods_needed=hours_to_periods_needed(hours, period_duration_minutes),
            )
        )
    return sorted(described, key=lambda item: item.subject_name.lower())


def list_allocations(db: Session, school: School, class_id: str) -> AllocationListOut:
    get_school_class(db, school.id, class_id)
    duration = school_period_duration(school, load_period_specs(db, school.id))
    return AllocationListOut(
        class_id=class_id,
        period_duration_minutes=duration,
        allocations=describe_allocations(db, load_class_subjects(db, class_id), duration),
    )


def update_allocation(
    db: Session,
    school: School,
    class_subject_id: str,
    hours_per_week: float,
    *,
    actor: User | None = None,
) -> ClassSubject:
    class_subject = _get_class_subject(db, school.id, class_subject_id)
    previous = float(class_subject.hours_per_week or 0)
    class_subject.hours_per_week = hours_per_week
    log_activity(
        db,
        user=actor,
        action="timetable.allocation.update",
        entity_type="class_subject",
        entity_id=class_subject.id,
        details={"hours_per_week": hours_per_week, "previous": previous},
    )
    db.commit()
    db.refresh(class_subject)
    return class_subject


def bulk_update_allocations(
    db: Session,
    school: School,
    items: list[AllocationBulkItem],
    *,
    actor: User | None = None,
) -> list[ClassSubject]:
    """Apply every hours change or none of them."""
    try:
        updated = []
        for item in items:
            class_subject = _get_class_subject(db, school.id, item.class_subject_id)
            class_subject.hours_per_week = item.hours_per_week
            updated.append(class_subject)
        log_activity(
            db,
            user=actor,
            action="timetable.allocation.bulk_update",
            entity_type="school",
            entity_id=school.id,
            details={"count": len(items)},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    for class_subject in updated:
        db.refresh(class_subject)
    return updated


def validate_allocations(db: Session, school: School, class_id: str) -> AllocationValidationOut:
    get_school_class(db, school.id, class_id)
    periods = load_period_specs(db, school.id)
    duration = school_period_duration(school, periods)
    allocations = [to_allocation_spec(item) for item in load_class_subjects(db, class_id)]
    report = validate_allocation_capacity(periods, allocations, duration)
    if not report.is_valid:
        logger.info(
            "ALLOCATION CHECK FAILED | school_id=%s | class_id=%s | needed=%s | available=%s",
            school.id,
            class_id,
            report.total_periods_needed,
            report.total_available_slots,
        )
    return AllocationValidationOut(
        is_valid=report.is_valid,
        message=report.message,
        total_available_slots=report.total_available_slots,
        total_available_hours=report.total_available_hours,
        total_allocated_hours=report.total_allocated_hours,
        total_periods_needed=report.total_periods_needed,
    )
