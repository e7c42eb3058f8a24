from __future__ import annotations

import logging
from dataclasses import dataclass
from time import perf_counter

from sqlalchemy import delete, select, text
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.exceptions import ResourceNotFoundError, SchedulerError, SlotConflictError
from app.models.class_subject import ClassSubject
from app.models.period import Period
from app.models.school import School
from app.models.school_class import SchoolClass
from app.models.subject import Subject
from app.models.timetable import TimetableSlot
from app.models.user import User, UserRole
from app.schemas.conflict import ConflictClassEntry, ConflictReport, TeacherConflict
from app.schemas.timetable import (
    ClassGenerationResult,
    ClassTimetableOut,
    GenerationResult,
    OverviewClass,
    OverviewSubject,
    OverviewTeacher,
    PeriodOut,
    SlotOut,
    SlotUpsert,
    SlotUpsertResult,
    TeacherTimetableOut,
    TimetableOverviewOut,
)
from app.services.allocations import (
    describe_allocations,
    get_school_class,
    list_school_classes,
    load_class_subjects,
    to_allocation_spec,
)
from app.services.audit import log_activity
from app.services.periods import get_period, list_periods, load_period_specs, school_period_duration
from app.services.schedule_locks import get_schedule_locks
from app.services.timetable_engine import (
    DAY_NAMES,
    CapacityReport,
    ClassGenerationOutcome,
    PeriodSpec,
    SlotRecord,
    TeacherOccupancy,
    find_teacher_conflicts,
    generate_class_slots,
    validate_allocation_capacity,
)

logger = logging.getLogger(__name__)


@dataclass
class _SchoolLookup:
    classes: dict[str, SchoolClass]
    periods: dict[str, Period]
    class_subjects: dict[str, ClassSubject]
    subjects: dict[str, Subject]
    users: dict[str, User]

    def effective_teacher_id(self, slot: TimetableSlot) -> str | None:
        if slot.teacher_id:
            return slot.teacher_id
        class_subject = self.class_subjects.get(slot.class_subject_id) if slot.class_subject_id else None
        return class_subject.teacher_id if class_subject is not None else None

    def subject_name(self, class_subject_id: str | None) -> str:
        class_subject = self.class_subjects.get(class_subject_id) if class_subject_id else None
        subject = self.subjects.get(class_subject.subject_id) if class_subject is not None else None
        return subject.name if subject is not None else "Unknown"

    def teacher_name(self, teacher_id: str | None) -> str:
        user = self.users.get(teacher_id) if teacher_id else None
        return user.full_name if user is not None else "Unknown"

    def class_name(self, class_id: str) -> str:
        school_class = self.classes.get(class_id)
        return school_class.name if school_class is not None else "Unknown"

    def to_record(self, slot: TimetableSlot) -> SlotRecord:
        return SlotRecord(
            class_id=slot.class_id,
            period_id=slot.period_id,
            day_of_week=slot.day_of_week,
            teacher_id=self.effective_teacher_id(slot),
            class_subject_id=slot.class_subject_id,
            slot_id=slot.id,
        )

    def describe(self, slot: TimetableSlot) -> SlotOut:
        teacher_id = self.effective_teacher_id(slot)
        period = self.periods.get(slot.period_id)
        return SlotOut(
            id=slot.id,
            class_id=slot.class_id,
            class_name=self.class_name(slot.class_id),
            period_id=slot.period_id,
            period_name=period.name if period is not None else None,
            day_of_week=slot.day_of_week,
            class_subject_id=slot.class_subject_id,
            subject_name=self.subject_name(slot.class_subject_id) if slot.class_subject_id else None,
            teacher_id=teacher_id,
            teacher_name=self.teacher_name(teacher_id) if teacher_id else None,
            room_number=slot.room_number,
        )

    def period_order(self, period_id: str) -> int:
        period = self.periods.get(period_id)
        return period.order if period is not None else 0


def _load_lookup(db: Session, school_id: str) -> _SchoolLookup:
    classes = {item.id: item for item in db.execute(select(SchoolClass).where(SchoolClass.school_id == school_id)).scalars()}
    periods = {item.id: item for item in db.execute(select(Period).where(Period.school_id == school_id)).scalars()}
    class_subjects = (
        {
            item.id: item
            for item in db.execute(select(ClassSubject).where(ClassSubject.class_id.in_(list(classes)))).scalars()
        }
        if classes
        else {}
    )
    subjects = {item.id: item for item in db.execute(select(Subject).where(Subject.school_id == school_id)).scalars()}
    users = {item.id: item for item in db.execute(select(User).where(User.school_id == school_id)).scalars()}
    return _SchoolLookup(
        classes=classes,
        periods=periods,
        class_subjects=class_subjects,
        subjects=subjects,
        users=users,
    )


def _school_slots(db: Session, class_ids: list[str]) -> list[TimetableSlot]:
    if not class_ids:
        return []
    return list(db.execute(select(TimetableSlot).where(TimetableSlot.class_id.in_(class_ids))).scalars())


def _acquire_database_lock(db: Session, key: str) -> None:
    # Cross-process guard; the in-process registry only covers one worker.
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


def _lock_timeout() -> float:
    return get_settings().schedule_lock_timeout_seconds


def _known_reference_ids(db: Session, school_id: str) -> tuple[set[str], set[str]]:
    subject_ids = set(db.execute(select(Subject.id).where(Subject.school_id == school_id)).scalars())
    teacher_ids = set(db.execute(select(User.id).where(User.school_id == school_id)).scalars())
    return subject_ids, teacher_ids


def _class_message(
    school_class: SchoolClass,
    outcome: ClassGenerationOutcome,
    report: CapacityReport,
    teaching_periods: int,
) -> str:
    if report.total_periods_needed == 0:
        return f"No subjects with time allocations for {school_class.name}. Nothing to schedule."
    if teaching_periods == 0:
        return "No periods configured. Please set up periods first."
    parts = [f"Generated {outcome.slots_created} slots for {school_class.name}."]
    if outcome.unplaced:
        parts.append(
            f"{outcome.unplaced} period(s) could not be placed because the teacher or the class had no free slot left."
        )
    if outcome.skipped_allocation_ids:
        parts.append(
            f"Skipped {len(outcome.skipped_allocation_ids)} allocation(s) referring to a missing subject or teacher."
        )
    if not report.is_valid:
        parts.append(report.message)
    return " ".join(parts)


def _schedule_class(
    db: Session,
    school_class: SchoolClass,
    periods: list[PeriodSpec],
    period_duration: int,
    occupancy: TeacherOccupancy,
    known_ids: tuple[set[str], set[str]],
) -> ClassGenerationResult:
    allocations = [to_allocation_spec(item) for item in load_class_subjects(db, school_class.id)]
    report = validate_allocation_capacity(periods, allocations, period_duration)
    outcome = generate_class_slots(
        school_class.id,
        periods,
        allocations,
        period_duration,
        occupancy,
        known_subject_ids=known_ids[0],
        known_teacher_ids=known_ids[1],
    )
    for placed in outcome.slots:
        db.add(
            TimetableSlot(
                class_id=placed.class_id,
                period_id=placed.period_id,
                day_of_week=placed.day_of_week,
                class_subject_id=placed.class_subject_id,
                teacher_id=placed.teacher_id,
                room_number=placed.room_number,
            )
        )
    if outcome.unplaced or outcome.skipped_allocation_ids:
        logger.warning(
            "CLASS TIMETABLE INCOMPLETE | class_id=%s | unplaced=%s | unplaced_by_allocation=%s | skipped=%s",
            school_class.id,
            outcome.unplaced,
            outcome.unplaced_by_allocation,
            outcome.skipped_allocation_ids,
        )
    teaching_periods = sum(1 for period in periods if not period.is_break)
    return ClassGenerationResult(
        class_id=school_class.id,
        class_name=school_class.name,
        message=_class_message(school_class, outcome, report, teaching_periods),
        slots_created=outcome.slots_created,
        unplaced_instances=outcome.unplaced,
        skipped_allocations=list(outcome.skipped_allocation_ids),
    )


def generate_class_timetable(
    db: Session,
    school: School,
    class_id: str,
    *,
    actor: User | None = None,
) -> GenerationResult:
    """Replace one class's timetable. Manual edits of that class are discarded.

    Runs under the school-wide lock: placement reads every other class's teacher
    occupancy, so two class generations must not interleave.
    """
    started = perf_counter()
    with get_schedule_locks().school_exclusive(school.id, _lock_timeout()):
        school_class = get_school_class(db, school.id, class_id)
        logger.info("CLASS TIMETABLE GENERATION START | school_id=%s | class_id=%s", school.id, class_id)
        try:
            _acquire_database_lock(db, f"timetable:{school.id}")
            periods = load_period_specs(db, school.id)
            period_duration = school_period_duration(school, periods)

            lookup = _load_lookup(db, school.id)
            other_slots = [slot for slot in _school_slots(db, list(lookup.classes)) if slot.class_id != class_id]
            occupancy = TeacherOccupancy.from_slots(lookup.to_record(slot) for slot in other_slots)

            db.execute(delete(TimetableSlot).where(TimetableSlot.class_id == class_id))
            result = _schedule_class(
                db,
                school_class,
                periods,
                period_duration,
                occupancy,
                _known_reference_ids(db, school.id),
            )
            log_activity(
                db,
                user=actor,
                action="timetable.generate.class",
                entity_type="class",
                entity_id=class_id,
                details={
                    "slots_created": result.slots_created,
                    "unplaced_instances": result.unplaced_instances,
                    "skipped_allocations": result.skipped_allocations,
                },
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("CLASS TIMETABLE GENERATION FAILED | school_id=%s | class_id=%s", school.id, class_id)
            raise

    logger.info(
        "CLASS TIMETABLE GENERATION COMPLETE | school_id=%s | class_id=%s | slots=%s | unplaced=%s | wall_ms=%s",
        school.id,
        class_id,
        result.slots_created,
        result.unplaced_instances,
        int((perf_counter() - started) * 1000),
    )
    return GenerationResult(
        success=True,
        message=result.message,
        slots_created=result.slots_created,
        unplaced_instances=result.unplaced_instances,
        skipped_allocations=result.skipped_allocations,
        results=[result],
    )


def generate_all_classes_timetable(db: Session, school: School, *, actor: User | None = None) -> GenerationResult:
    """Clear every class timetable of the school and rebuild them in priority order.

    Classes earlier in ``list_school_classes`` order claim teacher slots first.
    """
    started = perf_counter()
    with get_schedule_locks().school_exclusive(school.id, _lock_timeout()):
        logger.info("SCHOOL TIMETABLE GENERATION START | school_id=%s", school.id)
        try:
            _acquire_database_lock(db, f"timetable:{school.id}")
            classes = list_school_classes(db, school.id)
            class_ids = [item.id for item in classes]
            if class_ids:
                db.execute(delete(TimetableSlot).where(TimetableSlot.class_id.in_(class_ids)))

            periods = load_period_specs(db, school.id)
            period_duration = school_period_duration(school, periods)
            known_ids = _known_reference_ids(db, school.id)
            occupancy = TeacherOccupancy()

            results = [
                _schedule_class(db, school_class, periods, period_duration, occupancy, known_ids)
                for school_class in classes
            ]
            log_activity(
                db,
                user=actor,
                action="timetable.generate.all",
                entity_type="school",
                entity_id=school.id,
                details={
                    "classes": len(results),
                    "slots_created": sum(item.slots_created for item in results),
                    "unplaced_instances": sum(item.unplaced_instances for item in results),
                },
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("SCHOOL TIMETABLE GENERATION FAILED | school_id=%s", school.id)
            raise

    total_slots = sum(item.slots_created for item in results)
    total_unplaced = sum(item.unplaced_instances for item in results)
    skipped = [allocation_id for item in results for allocation_id in item.skipped_allocations]
    if not results:
        message = "No classes found. Nothing to generate."
    else:
        message = f"Generated timetable for {len(results)} classes with {total_slots} slots."
        if total_unplaced:
            incomplete = [item.class_name for item in results if item.unplaced_instances]
            message += f" {total_unplaced} period(s) could not be placed ({', '.join(incomplete)})."
        if skipped:
            message += f" Skipped {len(skipped)} allocation(s) referring to a missing subject or teacher."

    logger.info(
        "SCHOOL TIMETABLE GENERATION COMPLETE | school_id=%s | classes=%s | slots=%s | unplaced=%s | wall_ms=%s",
        school.id,
        len(results),
        total_slots,
        total_unplaced,
        int((perf_counter() - started) * 1000),
    )
    return GenerationResult(
        success=True,
        message=message,
        slots_created=total_slots,
        unplaced_instances=total_unplaced,
        skipped_allocations=skipped,
        results=results,
    )


def check_all_teacher_conflicts(db: Session, school: School, teacher_id: str | None = None) -> ConflictReport:
    """Report every teacher taught in more than one class at the same period and weekday."""
    lookup = _load_lookup(db, school.id)
    records = [lookup.to_record(slot) for slot in _school_slots(db, list(lookup.classes))]
    if teacher_id is not None:
        records = [record for record in records if record.teacher_id == teacher_id]

    conflicts = []
    for group in find_teacher_conflicts(records):
        period = lookup.periods.get(group.period_id)
        conflicts.append(
            TeacherConflict(
                teacher_id=group.teacher_id,
                teacher_name=lookup.teacher_name(group.teacher_id),
                period_id=group.period_id,
                period_name=period.name if period is not None else "Unknown",
                period_time=f"{period.start_time} - {period.end_time}" if period is not None else "",
                day_of_week=group.day_of_week,
                day_name=DAY_NAMES.get(group.day_of_week, str(group.day_of_week)),
                classes=[
                    ConflictClassEntry(
                        class_id=record.class_id,
                        class_name=lookup.class_name(record.class_id),
                        subject_name=lookup.subject_name(record.class_subject_id),
                        slot_id=record.slot_id,
                    )
                    for record in group.slots
                ],
            )
        )
    conflicts.sort(key=lambda item: (item.teacher_name.lower(), item.day_of_week, lookup.period_order(item.period_id)))
    if conflicts:
        logger.warning("TEACHER CONFLICTS FOUND | school_id=%s | count=%s", school.id, len(conflicts))
    return ConflictReport(conflicts=conflicts)


def _find_cell(db: Session, class_id: str, period_id: str, day_of_week: int) -> TimetableSlot | None:
    return db.execute(
        select(TimetableSlot).where(
            TimetableSlot.class_id == class_id,
            TimetableSlot.period_id == period_id,
            TimetableSlot.day_of_week == day_of_week,
        )
    ).scalar_one_or_none()


def upsert_slot(db: Session, school: School, payload: SlotUpsert, *, actor: User | None = None) -> SlotUpsertResult:
    """Write one cell by hand.

    Without a subject the cell is cleared. A teacher clash with another class is
    refused unless ``force`` is set; forced writes report the clashing classes.
    """
    with get_schedule_locks().class_exclusive(school.id, payload.class_id, _lock_timeout()):
        get_school_class(db, school.id, payload.class_id)
        period = get_period(db, school.id, payload.period_id)
        if period.is_break:
            raise SchedulerError("Break periods cannot hold lessons", details={"period_id": period.id})

        existing = _find_cell(db, payload.class_id, payload.period_id, payload.day_of_week)
        if payload.class_subject_id is None:
            if existing is not None:
                db.delete(existing)
                log_activity(
                    db,
                    user=actor,
                    action="timetable.slot.clear",
                    entity_type="class",
                    entity_id=payload.class_id,
                    details={"period_id": payload.period_id, "day_of_week": payload.day_of_week},
                )
                db.commit()
            return SlotUpsertResult(cleared=True)

        class_subject = db.get(ClassSubject, payload.class_subject_id)
        if class_subject is None or class_subject.class_id != payload.class_id:
            raise ResourceNotFoundError("Class subject", payload.class_subject_id)
        if payload.teacher_id is not None:
            teacher = db.get(User, payload.teacher_id)
            if teacher is None or teacher.school_id != school.id:
                raise ResourceNotFoundError("Teacher", payload.teacher_id)

        lookup = _load_lookup(db, school.id)
        effective_teacher = payload.teacher_id or class_subject.teacher_id
        clashing: list[str] = []
        if effective_teacher is not None:
            same_cell = db.execute(
                select(TimetableSlot).where(
                    TimetableSlot.period_id == payload.period_id,
                    TimetableSlot.day_of_week == payload.day_of_week,
                    TimetableSlot.class_id != payload.class_id,
                    TimetableSlot.class_id.in_(list(lookup.classes)),
                )
            ).scalars()
            clashing = sorted(
                {
                    lookup.class_name(slot.class_id)
                    for slot in same_cell
                    if lookup.effective_teacher_id(slot) == effective_teacher
                }
            )
        if clashing and not payload.force:
            raise SlotConflictError(
                f"Teacher is already assigned to {', '.join(clashing)} at this time",
                details={"teacher_id": effective_teacher, "classes": clashing},
            )

        try:
            if existing is None:
                existing = TimetableSlot(
                    class_id=payload.class_id,
                    period_id=payload.period_id,
                    day_of_week=payload.day_of_week,
                )
                db.add(existing)
            existing.class_subject_id = payload.class_subject_id
            existing.teacher_id = payload.teacher_id
            existing.room_number = payload.room_number
            db.flush()
            log_activity(
                db,
                user=actor,
                action="timetable.slot.upsert",
                entity_type="timetable_slot",
                entity_id=existing.id,
                details={
                    "class_id": payload.class_id,
                    "period_id": payload.period_id,
                    "day_of_week": payload.day_of_week,
                    "class_subject_id": payload.class_subject_id,
                    "forced_conflicts": clashing,
                },
            )
            db.commit()
            db.refresh(existing)
        except Exception:
            db.rollback()
            raise

    if clashing:
        logger.warning(
            "FORCED SLOT CONFLICT | school_id=%s | class_id=%s | teacher_id=%s | period_id=%s | day=%s | classes=%s",
            school.id,
            payload.class_id,
            effective_teacher,
            payload.period_id,
            payload.day_of_week,
            clashing,
        )
    return SlotUpsertResult(slot=lookup.describe(existing), conflicting_classes=clashing)


def delete_slot(
    db: Session,
    school: School,
    class_id: str,
    period_id: str,
    day_of_week: int,
    *,
    actor: User | None = None,
) -> None:
    with get_schedule_locks().class_exclusive(school.id, class_id, _lock_timeout()):
        get_school_class(db, school.id, class_id)
        slot = _find_cell(db, class_id, period_id, day_of_week)
        if slot is None:
            raise ResourceNotFoundError("Timetable slot", f"{class_id}/{period_id}/{day_of_week}")
        db.delete(slot)
        log_activity(
            db,
            user=actor,
            action="timetable.slot.clear",
            entity_type="class",
            entity_id=class_id,
            details={"period_id": period_id, "day_of_week": day_of_week},
        )
        db.commit()


def _sorted_slots(lookup: _SchoolLookup, slots: list[TimetableSlot]) -> list[SlotOut]:
    ordered = sorted(slots, key=lambda slot: (slot.day_of_week, lookup.period_order(slot.period_id)))
    return [lookup.describe(slot) for slot in ordered]


def get_class_timetable(db: Session, school: School, class_id: str) -> ClassTimetableOut:
    school_class = get_school_class(db, school.id, class_id)
    lookup = _load_lookup(db, school.id)
    slots = list(db.execute(select(TimetableSlot).where(TimetableSlot.class_id == class_id)).scalars())
    return ClassTimetableOut(
        class_id=school_class.id,
        class_name=school_class.name,
        periods=[PeriodOut.model_validate(period) for period in list_periods(db, school.id)],
        slots=_sorted_slots(lookup, slots),
    )


def get_teacher_timetable(db: Session, school: School, teacher_id: str) -> TeacherTimetableOut:
    teacher = db.get(User, teacher_id)
    if teacher is None or teacher.school_id != school.id:
        raise ResourceNotFoundError("Teacher", teacher_id)
    lookup = _load_lookup(db, school.id)
    slots = [
        slot
        for slot in _school_slots(db, list(lookup.classes))
        if lookup.effective_teacher_id(slot) == teacher_id
    ]
    return TeacherTimetableOut(
        teacher_id=teacher.id,
        teacher_name=teacher.full_name,
        periods=[PeriodOut.model_validate(period) for period in list_periods(db, school.id)],
        slots=_sorted_slots(lookup, slots),
    )


def get_timetable_overview(db: Session, school: School) -> TimetableOverviewOut:
    periods = list_periods(db, school.id)
    period_duration = school_period_duration(school, load_period_specs(db, school.id))
    classes = [
        OverviewClass(
            id=school_class.id,
            name=school_class.name,
            grade_level=school_class.grade_level,
            section=school_class.section,
            allocations=describe_allocations(db, load_class_subjects(db, school_class.id), period_duration),
        )
        for school_class in list_school_classes(db, school.id)
    ]
    teachers = db.execute(
        select(User)
        .where(User.school_id == school.id, User.role == UserRole.teacher, User.is_active.is_(True))
        .order_by(User.first_name, User.last_name)
    ).scalars()
    subjects = db.execute(select(Subject).where(Subject.school_id == school.id).order_by(Subject.name)).scalars()
    return TimetableOverviewOut(
        period_duration_minutes=period_duration,
        periods=[PeriodOut.model_validate(period) for period in periods],
        classes=classes,
        teachers=[OverviewTeacher(id=user.id, name=user.full_name) for user in teachers],
        subjects=[OverviewSubject(id=subject.id, name=subject.name, code=subject.code) for subject in subjects],
    )
