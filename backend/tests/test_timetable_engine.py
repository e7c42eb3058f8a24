import random
from collections import Counter, defaultdict

import pytest

from app.core.exceptions import SchedulerError
from app.services.timetable_engine import (
    WORKING_DAYS,
    AllocationSpec,
    PeriodSpec,
    SlotGrid,
    SlotRecord,
    TeacherOccupancy,
    expand_instances,
    find_teacher_conflicts,
    generate_class_slots,
    hours_to_periods_needed,
    resolve_period_duration,
    validate_allocation_capacity,
)


def make_periods(count, *, break_after=(), minutes=45):
    periods = []
    clock = 8 * 60
    order = 1
    for number in range(1, count + 1):
        start, clock = clock, clock + minutes
        periods.append(
            PeriodSpec(
                id=f"p{number}",
                name=f"Period {number}",
                start_time=f"{start // 60:02d}:{start % 60:02d}",
                end_time=f"{clock // 60:02d}:{clock % 60:02d}",
                order=order,
            )
        )
        order += 1
        if number in break_after:
            start, clock = clock, clock + 15
            periods.append(
                PeriodSpec(
                    id=f"break{number}",
                    name="Break",
                    start_time=f"{start // 60:02d}:{start % 60:02d}",
                    end_time=f"{clock // 60:02d}:{clock % 60:02d}",
                    order=order,
                    is_break=True,
                )
            )
            order += 1
    return periods


def hours_for(periods_needed, minutes=45):
    return periods_needed * minutes / 60


def as_records(slots):
    return [
        SlotRecord(
            class_id=slot.class_id,
            period_id=slot.period_id,
            day_of_week=slot.day_of_week,
            teacher_id=slot.teacher_id,
            class_subject_id=slot.class_subject_id,
        )
        for slot in slots
    ]


@pytest.mark.parametrize(
    ("hours", "minutes", "expected"),
    [
        (2.25, 45, 3),
        (1.0, 40, 2),
        (2.5, 60, 3),
        (0, 45, 0),
        (3.75, 45, 5),
    ],
)
def test_hours_to_periods_needed(hours, minutes, expected):
    assert hours_to_periods_needed(hours, minutes) == expected


def test_hours_to_periods_needed_rejects_non_positive_duration():
    with pytest.raises(ValueError):
        hours_to_periods_needed(2, 0)


def test_resolve_period_duration_prefers_override_then_first_teaching_period():
    periods = [
        PeriodSpec(id="assembly", name="Assembly", start_time="07:45", end_time="08:00", order=0, is_break=True),
        PeriodSpec(id="p1", name="Period 1", start_time="08:00", end_time="08:40", order=1),
        PeriodSpec(id="p2", name="Period 2", start_time="08:40", end_time="09:30", order=2),
    ]
    assert resolve_period_duration(periods, override_minutes=50) == 50
    assert resolve_period_duration(periods) == 40
    assert resolve_period_duration([]) == 45
    assert resolve_period_duration([], default_minutes=30) == 30


def test_validation_boundary_exactly_full_grid_is_valid():
    periods = make_periods(8, break_after=(4,))
    allocations = [AllocationSpec(id=f"a{i}", subject_id=f"s{i}", hours_per_week=hours_for(10)) for i in range(4)]

    report = validate_allocation_capacity(periods, allocations, 45)

    assert report.is_valid is True
    assert report.total_available_slots == 40
    assert report.total_periods_needed == 40
    assert report.total_allocated_hours == pytest.approx(30.0)
    assert report.total_available_hours == pytest.approx(30.0)


def test_validation_boundary_one_period_over_is_invalid():
    periods = make_periods(8, break_after=(4,))
    allocations = [AllocationSpec(id=f"a{i}", subject_id=f"s{i}", hours_per_week=hours_for(10)) for i in range(4)]
    allocations.append(AllocationSpec(id="extra", subject_id="s-extra", hours_per_week=hours_for(1)))

    report = validate_allocation_capacity(periods, allocations, 45)

    assert report.is_valid is False
    assert report.total_available_slots == 40
    assert report.total_periods_needed == 41
    assert "exceeds available slots (40)" in report.message


def test_validation_sums_rounded_periods_per_allocation():
    periods = make_periods(6)
    # 0.5h each is 0.67 periods, rounded up to 1 per allocation.
    allocations = [AllocationSpec(id=f"a{i}", subject_id=f"s{i}", hours_per_week=0.5) for i in range(3)]

    report = validate_allocation_capacity(periods, allocations, 45)

    assert report.total_periods_needed == 3


def test_validation_without_allocations_is_trivially_valid():
    report = validate_allocation_capacity(make_periods(6), [], 45)

    assert report.is_valid is True
    assert report.total_periods_needed == 0
    assert "Nothing to schedule" in report.message


def test_validation_without_periods_flags_requested_hours():
    allocations = [AllocationSpec(id="a1", subject_id="s1", hours_per_week=3)]

    report = validate_allocation_capacity([], allocations, 45)

    assert report.is_valid is False
    assert report.message == "No periods configured"
    assert report.total_available_slots == 0


def test_expand_instances_orders_by_demand_and_keeps_ties_in_input_order():
    allocations = [
        AllocationSpec(id="art", subject_id="s-art", hours_per_week=hours_for(1)),
        AllocationSpec(id="math", subject_id="s-math", hours_per_week=hours_for(3)),
        AllocationSpec(id="english", subject_id="s-english", hours_per_week=hours_for(3)),
    ]

    queue = [item.id for item in expand_instances(allocations, 45)]

    assert queue == ["math", "math", "math", "english", "english", "english", "art"]


def test_simple_single_class_spreads_each_subject_across_weekdays():
    periods = make_periods(6)
    allocations = [
        AllocationSpec(id="math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(5)),
        AllocationSpec(id="english", subject_id="s-english", teacher_id="t2", hours_per_week=hours_for(5)),
    ]

    outcome = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())

    assert outcome.slots_created == 10
    assert outcome.unplaced == 0
    days_by_subject = defaultdict(list)
    for slot in outcome.slots:
        days_by_subject[slot.class_subject_id].append(slot.day_of_week)
    assert sorted(days_by_subject["math"]) == list(WORKING_DAYS)
    assert sorted(days_by_subject["english"]) == list(WORKING_DAYS)


def test_higher_demand_subject_gets_first_pick():
    periods = make_periods(4)
    allocations = [
        AllocationSpec(id="science", subject_id="s-science", hours_per_week=hours_for(2)),
        AllocationSpec(id="math", subject_id="s-math", hours_per_week=hours_for(4)),
    ]

    outcome = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())

    cells = {(slot.period_id, slot.day_of_week): slot.class_subject_id for slot in outcome.slots}
    assert [cells[("p1", day)] for day in (1, 2, 3, 4)] == ["math"] * 4
    assert cells[("p1", 5)] == "science"
    assert cells[("p2", 1)] == "science"


def test_cross_class_teacher_is_never_double_booked():
    periods = make_periods(5)
    occupancy = TeacherOccupancy()
    allocation_a = AllocationSpec(id="a-math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(5))
    allocation_b = AllocationSpec(id="b-math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(5))

    first = generate_class_slots("class-a", periods, [allocation_a], 45, occupancy)
    second = generate_class_slots("class-b", periods, [allocation_b], 45, occupancy)

    assert first.slots_created == 5
    assert second.slots_created == 5
    cells_a = {(slot.period_id, slot.day_of_week) for slot in first.slots}
    cells_b = {(slot.period_id, slot.day_of_week) for slot in second.slots}
    assert cells_a.isdisjoint(cells_b)
    assert find_teacher_conflicts(as_records(first.slots + second.slots)) == []
    assert all(not occupancy.is_free("t1", *cell) for cell in cells_a | cells_b)


def test_small_grid_leaves_instances_unplaced_instead_of_double_booking():
    periods = make_periods(1)
    occupancy = TeacherOccupancy()
    allocation_a = AllocationSpec(id="a-math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(5))
    allocation_b = AllocationSpec(id="b-math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(5))

    first = generate_class_slots("class-a", periods, [allocation_a], 45, occupancy)
    second = generate_class_slots("class-b", periods, [allocation_b], 45, occupancy)

    assert first.slots_created == 5
    assert second.slots_created == 0
    assert second.unplaced == 5
    assert second.unplaced_by_allocation == {"b-math": 5}
    assert find_teacher_conflicts(as_records(first.slots + second.slots)) == []


def test_break_periods_are_never_assigned():
    periods = make_periods(3, break_after=(1, 2))
    allocations = [AllocationSpec(id="math", subject_id="s-math", hours_per_week=hours_for(15))]

    outcome = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())

    assert outcome.slots_created == 15
    assert not any(slot.period_id.startswith("break") for slot in outcome.slots)


def test_over_allocated_class_is_capped_at_grid_capacity():
    periods = make_periods(2)
    allocations = [
        AllocationSpec(id="math", subject_id="s-math", hours_per_week=hours_for(8)),
        AllocationSpec(id="art", subject_id="s-art", hours_per_week=hours_for(4)),
    ]

    outcome = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())

    assert outcome.slots_created == 10
    assert outcome.unplaced == 2
    assert outcome.unplaced_by_allocation == {"art": 2}


def test_allocation_without_teacher_ignores_occupancy():
    periods = make_periods(1)
    occupancy = TeacherOccupancy()
    for day in WORKING_DAYS:
        occupancy.occupy("t1", "p1", day)
    allocations = [AllocationSpec(id="study", subject_id="s-study", hours_per_week=hours_for(5))]

    outcome = generate_class_slots("class-a", periods, allocations, 45, occupancy)

    assert outcome.slots_created == 5
    assert all(slot.teacher_id is None for slot in outcome.slots)


def test_allocations_with_missing_references_are_skipped():
    periods = make_periods(4)
    allocations = [
        AllocationSpec(id="math", subject_id="s-math", teacher_id="t1", hours_per_week=hours_for(3)),
        AllocationSpec(id="ghost-subject", subject_id="s-deleted", teacher_id="t1", hours_per_week=hours_for(2)),
        AllocationSpec(id="ghost-teacher", subject_id="s-art", teacher_id="t-deleted", hours_per_week=hours_for(2)),
    ]

    outcome = generate_class_slots(
        "class-a",
        periods,
        allocations,
        45,
        TeacherOccupancy(),
        known_subject_ids={"s-math", "s-art"},
        known_teacher_ids={"t1"},
    )

    assert outcome.slots_created == 3
    assert outcome.skipped_allocation_ids == ["ghost-subject", "ghost-teacher"]
    assert {slot.class_subject_id for slot in outcome.slots} == {"math"}


def test_regenerating_a_class_is_idempotent():
    periods = make_periods(6, break_after=(3,))
    allocations = [
        AllocationSpec(id="math", subject_id="s-math", teacher_id="t1", hours_per_week=4.5),
        AllocationSpec(id="english", subject_id="s-english", teacher_id="t2", hours_per_week=3),
        AllocationSpec(id="pe", subject_id="s-pe", hours_per_week=1.5),
    ]

    first = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())
    second = generate_class_slots("class-a", periods, allocations, 45, TeacherOccupancy())

    assert first.slots_created == second.slots_created
    assert first.slots == second.slots


def test_slot_grid_refuses_filled_and_break_cells():
    periods = make_periods(2, break_after=(1,))
    grid = SlotGrid("class-a", periods)
    allocation = AllocationSpec(id="math", subject_id="s-math", hours_per_week=1)

    assert grid.candidate_cells()[:5] == [("p1", day) for day in WORKING_DAYS]

    grid.place(allocation, "p1", 1)
    with pytest.raises(SchedulerError):
        grid.place(allocation, "p1", 1)
    with pytest.raises(SchedulerError):
        grid.place(allocation, "break1", 1)
    with pytest.raises(SchedulerError):
        grid.place(allocation, "p2", 6)
    assert grid.is_filled("p1", 1)
    assert not grid.is_filled("p2", 1)
    assert len(grid.slots()) == 1


def test_find_teacher_conflicts_reports_only_cross_class_groups():
    records = [
        SlotRecord(class_id="class-a", period_id="p1", day_of_week=1, teacher_id="t1", class_subject_id="a-math"),
        SlotRecord(class_id="class-b", period_id="p1", day_of_week=1, teacher_id="t1", class_subject_id="b-math"),
        SlotRecord(class_id="class-a", period_id="p2", day_of_week=1, teacher_id="t2", class_subject_id="a-art"),
        SlotRecord(class_id="class-c", period_id="p2", day_of_week=2, teacher_id="t2", class_subject_id="c-art"),
        SlotRecord(class_id="class-c", period_id="p3", day_of_week=2, teacher_id=None, class_subject_id="c-pe"),
        SlotRecord(class_id="class-d", period_id="p3", day_of_week=2, teacher_id=None, class_subject_id="d-pe"),
    ]

    conflicts = find_teacher_conflicts(records)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert (conflict.teacher_id, conflict.period_id, conflict.day_of_week) == ("t1", "p1", 1)
    assert conflict.class_ids == ["class-a", "class-b"]


def test_occupancy_seeded_from_existing_slots():
    occupancy = TeacherOccupancy.from_slots(
        [
            SlotRecord(class_id="class-a", period_id="p1", day_of_week=1, teacher_id="t1"),
            SlotRecord(class_id="class-a", period_id="p2", day_of_week=1, teacher_id=None),
        ]
    )

    assert occupancy.is_free("t1", "p1", 1) is False
    assert occupancy.is_free("t1", "p1", 2) is True
    assert occupancy.is_free(None, "p1", 1) is True
    assert occupancy.is_free("t2", "p2", 1) is True


@pytest.mark.parametrize("seed", range(25))
def test_generated_schedules_never_double_book_teachers(seed):
    rng = random.Random(seed)
    periods = make_periods(rng.randint(3, 8), break_after=(2,))
    teachers = [f"t{index}" for index in range(rng.randint(2, 5))]
    occupancy = TeacherOccupancy()
    capacity = sum(1 for period in periods if not period.is_break) * len(WORKING_DAYS)

    all_slots = []
    for class_index in range(rng.randint(2, 6)):
        allocations = [
            AllocationSpec(
                id=f"c{class_index}-a{index}",
                subject_id=f"s{index}",
                teacher_id=rng.choice(teachers + [None]),
                hours_per_week=rng.choice([0, 0.75, 1.5, 2.25, 3, 3.75, 4.5]),
            )
            for index in range(rng.randint(1, 6))
        ]
        outcome = generate_class_slots(f"class-{class_index}", periods, allocations, 45, occupancy)
        needed = sum(hours_to_periods_needed(item.hours_per_week, 45) for item in allocations)

        assert outcome.slots_created <= capacity
        assert outcome.slots_created + outcome.unplaced == needed
        cells = Counter((slot.period_id, slot.day_of_week) for slot in outcome.slots)
        assert all(count == 1 for count in cells.values())
        all_slots.extend(outcome.slots)

    assert find_teacher_conflicts(as_records(all_slots)) == []
