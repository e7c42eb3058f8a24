"""Greedy timetable slot assignment.

The engine works on plain records so it can run without a database session:

* ``PeriodSpec`` rows describe the school's daily grid (break rows included).
* ``AllocationSpec`` rows give a class's weekly hours per subject.
* ``TeacherOccupancy`` is the per-run index of cells each teacher already
  teaches; callers create one per run and pass it to every class they schedule.

Candidate cells are visited periods-outer, weekdays-inner (Monday..Friday), so a
subject's weekly occurrences spread over different days before a second period
is used on the same day. Changing this order changes generated timetables.
"""
from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field

from app.core.exceptions import SchedulerError
from app.schemas.timetable import parse_time_to_minutes

# Monday..Friday with 0 = Sunday.
WORKING_DAYS: tuple[int, ...] = (1, 2, 3, 4, 5)
DAY_NAMES: dict[int, str] = {
    0: "Sunday",
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
}
DEFAULT_PERIOD_DURATION_MINUTES = 45

Cell = tuple[str, int]


@dataclass(frozen=True)
class PeriodSpec:
    id: str
    name: str
    start_time: str
    end_time: str
    order: int
    is_break: bool = False

    @property
    def duration_minutes(self) -> int:
        return parse_time_to_minutes(self.end_time) - parse_time_to_minutes(self.start_time)


@dataclass(frozen=True)
class AllocationSpec:
    id: str
    subject_id: str
    hours_per_week: float
    teacher_id: str | None = None


@dataclass(frozen=True)
class PlacedSlot:
    class_id: str
    period_id: str
    day_of_week: int
    class_subject_id: str
    teacher_id: str | None
    room_number: str | None = None


@dataclass(frozen=True)
class SlotRecord:
    """A persisted slot reduced to what conflict detection needs."""

    class_id: str
    period_id: str
    day_of_week: int
    teacher_id: str | None
    class_subject_id: str | None = None
    slot_id: str | None = None


@dataclass(frozen=True)
class CapacityReport:
    is_valid: bool
    message: str
    total_available_slots: int
    total_available_hours: float
    total_allocated_hours: float
    total_periods_needed: int


@dataclass
class ClassGenerationOutcome:
    class_id: str
    slots: list[PlacedSlot] = field(default_factory=list)
    unplaced_by_allocation: dict[str, int] = field(default_factory=dict)
    skipped_allocation_ids: list[str] = field(default_factory=list)

    @property
    def slots_created(self) -> int:
        return len(self.slots)

    @property
    def unplaced(self) -> int:
        return sum(self.unplaced_by_allocation.values())


@dataclass(frozen=True)
class TeacherConflictGroup:
    teacher_id: str
    period_id: str
    day_of_week: int
    slots: tuple[SlotRecord, ...]

    @property
    def class_ids(self) -> list[str]:
        seen: list[str] = []
        for slot in self.slots:
            if slot.class_id not in seen:
                seen.append(slot.class_id)
        return seen


class TeacherOccupancy:
    """Cells (period, weekday) each teacher is already teaching during one run."""

    def __init__(self) -> None:
        self._busy: dict[str, set[Cell]] = defaultdict(set)

    @classmethod
    def from_slots(cls, slots: Iterable[SlotRecord]) -> "TeacherOccupancy":
        occupancy = cls()
        for slot in slots:
            occupancy.occupy(slot.teacher_id, slot.period_id, slot.day_of_week)
        return occupancy

    def is_free(self, teacher_id: str | None, period_id: str, day_of_week: int) -> bool:
        if teacher_id is None:
            return True
        busy = self._busy.get(teacher_id)
        return busy is None or (period_id, day_of_week) not in busy

    def occupy(self, teacher_id: str | None, period_id: str, day_of_week: int) -> None:
        if teacher_id is None:
            return
        self._busy[teacher_id].add((period_id, day_of_week))


class SlotGrid:
    """The period x weekday surface of one class; each teaching cell holds at most one slot."""

    def __init__(self, class_id: str, periods: Iterable[PeriodSpec], days: Iterable[int] = WORKING_DAYS) -> None:
        self.class_id = class_id
        self.days: tuple[int, ...] = tuple(days)
        self.teaching_periods: list[PeriodSpec] = sorted(
            (period for period in periods if not period.is_break),
            key=lambda period: period.order,
        )
        self._period_ids = {period.id for period in self.teaching_periods}
        self._cells: dict[Cell, PlacedSlot] = {}

    def candidate_cells(self) -> list[Cell]:
        return [(period.id, day) for period in self.teaching_periods for day in self.days]

    def is_filled(self, period_id: str, day_of_week: int) -> bool:
        return (period_id, day_of_week) in self._cells

    def place(self, allocation: AllocationSpec, period_id: str, day_of_week: int) -> PlacedSlot:
        if period_id not in self._period_ids or day_of_week not in self.days:
            raise SchedulerError(
                "Cell is not a schedulable teaching slot",
                details={"period_id": period_id, "day_of_week": day_of_week},
            )
        if self.is_filled(period_id, day_of_week):
            raise SchedulerError(
                "Cell is already filled for this class",
                details={"class_id": self.class_id, "period_id": period_id, "day_of_week": day_of_week},
            )
        slot = PlacedSlot(
            class_id=self.class_id,
            period_id=period_id,
            day_of_week=day_of_week,
            class_subject_id=allocation.id,
            teacher_id=allocation.teacher_id,
        )
        self._cells[(period_id, day_of_week)] = slot
        return slot

    def slots(self) -> list[PlacedSlot]:
        return [self._cells[cell] for cell in self.candidate_cells() if cell in self._cells]


def resolve_period_duration(
    periods: Iterable[PeriodSpec],
    override_minutes: int | None = None,
    default_minutes: int = DEFAULT_PERIOD_DURATION_MINUTES,
) -> int:
    """School override first, then the first teaching period's length, then the default."""
    if override_minutes is not None and override_minutes > 0:
        return override_minutes
    teaching = sorted((period for period in periods if not period.is_break), key=lambda period: period.order)
    if teaching:
        duration = teaching[0].duration_minutes
        if duration > 0:
            return duration
    return default_minutes


def hours_to_periods_needed(hours_per_week: float, period_duration_minutes: int) -> int:
    if period_duration_minutes <= 0:
        raise ValueError("period_duration_minutes must be positive")
    if hours_per_week <= 0:
        return 0
    # Half-up rounding: 1.5 periods -> 2.
    return int(math.floor(hours_per_week * 60 / period_duration_minutes + 0.5))


def validate_allocation_capacity(
    periods: Iterable[PeriodSpec],
    allocations: Iterable[AllocationSpec],
    period_duration_minutes: int,
    days: Collection[int] = WORKING_DAYS,
) -> CapacityReport:
    teaching_count = sum(1 for period in periods if not period.is_break)
    allocation_list = list(allocations)
    total_available_slots = teaching_count * len(days)
    total_available_hours = total_available_slots * period_duration_minutes / 60
    total_allocated_hours = sum(max(0.0, float(item.hours_per_week or 0)) for item in allocation_list)
    total_periods_needed = sum(
        hours_to_periods_needed(float(item.hours_per_week or 0), period_duration_minutes) for item in allocation_list
    )

    if total_periods_needed == 0:
        return CapacityReport(
            is_valid=True,
            message="No hours allocated for this class. Nothing to schedule.",
            total_available_slots=total_available_slots,
            total_available_hours=total_available_hours,
            total_allocated_hours=total_allocated_hours,
            total_periods_needed=0,
        )
    if teaching_count == 0:
        return CapacityReport(
            is_valid=False,
            message="No periods configured",
            total_available_slots=0,
            total_available_hours=0.0,
            total_allocated_hours=total_allocated_hours,
            total_periods_needed=total_periods_needed,
        )
    if total_periods_needed > total_available_slots:
        return CapacityReport(
            is_valid=False,
            message=(
                f"Total allocated hours ({total_allocated_hours:.1f}h = {total_periods_needed} periods) "
                f"exceeds available slots ({total_available_slots}). Please reduce allocations."
            ),
            total_available_slots=total_available_slots,
            total_available_hours=total_available_hours,
            total_allocated_hours=total_allocated_hours,
            total_periods_needed=total_periods_needed,
        )
    return CapacityReport(
        is_valid=True,
        message=(
            f"Allocations are valid. {total_allocated_hours:.1f}h ({total_periods_needed} periods) "
            f"/ {total_available_slots} slots allocated."
        ),
        total_available_slots=total_available_slots,
        total_available_hours=total_available_hours,
        total_allocated_hours=total_allocated_hours,
        total_periods_needed=total_periods_needed,
    )


def expand_instances(allocations: Iterable[AllocationSpec], period_duration_minutes: int) -> list[AllocationSpec]:
    """One entry per period to place, highest-demand allocations first.

    ``sorted`` is stable, so allocations needing the same number of periods keep
    their input order.
    """
    demand = [
        (allocation, hours_to_periods_needed(float(allocation.hours_per_week or 0), period_duration_minutes))
        for allocation in allocations
    ]
    ordered = sorted(demand, key=lambda item: -item[1])
    return [allocation for allocation, needed in ordered for _ in range(needed)]


def generate_class_slots(
    class_id: str,
    periods: Iterable[PeriodSpec],
    allocations: Iterable[AllocationSpec],
    period_duration_minutes: int,
    occupancy: TeacherOccupancy,
    *,
    known_subject_ids: Collection[str] | None = None,
    known_teacher_ids: Collection[str] | None = None,
    days: Iterable[int] = WORKING_DAYS,
) -> ClassGenerationOutcome:
    """Fill one class's grid and record every placement in ``occupancy``.

    Allocations pointing at a subject or teacher outside the known id sets are
    skipped. Instances that find no cell with a free teacher are counted per
    allocation and left out; nothing is backtracked.
    """
    grid = SlotGrid(class_id, periods, days)
    outcome = ClassGenerationOutcome(class_id=class_id)

    usable: list[AllocationSpec] = []
    for allocation in allocations:
        if known_subject_ids is not None and allocation.subject_id not in known_subject_ids:
            outcome.skipped_allocation_ids.append(allocation.id)
            continue
        if (
            allocation.teacher_id is not None
            and known_teacher_ids is not None
            and allocation.teacher_id not in known_teacher_ids
        ):
            outcome.skipped_allocation_ids.append(allocation.id)
            continue
        usable.append(allocation)

    free = grid.candidate_cells()
    for allocation in expand_instances(usable, period_duration_minutes):
        chosen: Cell | None = None
        for period_id, day in free:
            if occupancy.is_free(allocation.teacher_id, period_id, day):
                chosen = (period_id, day)
                break
        if chosen is None:
            outcome.unplaced_by_allocation[allocation.id] = outcome.unplaced_by_allocation.get(allocation.id, 0) + 1
            continue
        grid.place(allocation, *chosen)
        occupancy.occupy(allocation.teacher_id, *chosen)
        free.remove(chosen)

    outcome.slots = grid.slots()
    return outcome


def find_teacher_conflicts(slots: Iterable[SlotRecord]) -> list[TeacherConflictGroup]:
    """Group slots by (teacher, period, weekday) and keep groups spanning several classes.

    ``teacher_id`` on each record must already be the effective teacher.
    """
    groups: dict[tuple[str, str, int], list[SlotRecord]] = defaultdict(list)
    for slot in slots:
        if slot.teacher_id is None:
            continue
        groups[(slot.teacher_id, slot.period_id, slot.day_of_week)].append(slot)

    conflicts: list[TeacherConflictGroup] = []
    for (teacher_id, period_id, day), members in groups.items():
        if len({member.class_id for member in members}) > 1:
            conflicts.append(
                TeacherConflictGroup(
                    teacher_id=teacher_id,
                    period_id=period_id,
                    day_of_week=day,
                    slots=tuple(members),
                )
            )
    return conflicts
