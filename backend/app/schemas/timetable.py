from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator, model_validator

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_time_to_minutes(value: str) -> int:
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class PeriodBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    start_time: str
    end_time: str
    order: int = Field(ge=0, le=1000)
    is_break: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Period name cannot be blank")
        return cleaned

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_time_order(self) -> "PeriodBase":
        if parse_time_to_minutes(self.end_time) <= parse_time_to_minutes(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self


class PeriodCreate(PeriodBase):
    pass


class PeriodUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    start_time: str | None = None
    end_time: str | None = None
    order: int | None = Field(default=None, ge=0, le=1000)
    is_break: bool | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str | None) -> str | None:
        if value is not None and not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value


class PeriodBulkReplace(BaseModel):
    periods: list[PeriodCreate] = Field(default_factory=list, max_length=64)

    @model_validator(mode="after")
    def validate_unique_order(self) -> "PeriodBulkReplace":
        orders = [period.order for period in self.periods]
        if len(orders) != len(set(orders)):
            raise ValueError("Period order values must be unique")
        return self


class PeriodOut(PeriodBase):
    id: str

    model_config = {"from_attributes": True}


class AllocationOut(BaseModel):
    id: str
    class_id: str
    subject_id: str
    subject_name: str
    teacher_id: str | None = None
    teacher_name: str | None = None
    hours_per_week: float
    periods_needed: int


class AllocationListOut(BaseModel):
    class_id: str
    period_duration_minutes: int
    allocations: list[AllocationOut]


class AllocationUpdate(BaseModel):
    hours_per_week: float = Field(ge=0, le=168)


class AllocationBulkItem(AllocationUpdate):
    class_subject_id: str = Field(min_length=1, max_length=36)


class AllocationBulkUpdate(BaseModel):
    allocations: list[AllocationBulkItem] = Field(min_length=1, max_length=200)


class AllocationValidationOut(BaseModel):
    is_valid: bool
    message: str
    total_available_slots: int
    total_available_hours: float
    total_allocated_hours: float
    total_periods_needed: int


class SlotUpsert(BaseModel):
    class_id: str = Field(min_length=1, max_length=36)
    period_id: str = Field(min_length=1, max_length=36)
    day_of_week: int = Field(ge=0, le=6)
    class_subject_id: str | None = Field(default=None, max_length=36)
    teacher_id: str | None = Field(default=None, max_length=36)
    room_number: str | None = Field(default=None, max_length=50)
    force: bool = False

    @field_validator("room_number")
    @classmethod
    def strip_room(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class SlotOut(BaseModel):
    id: str
    class_id: str
    class_name: str | None = None
    period_id: str
    period_name: str | None = None
    day_of_week: int
    class_subject_id: str | None = None
    subject_name: str | None = None
    teacher_id: str | None = None
    teacher_name: str | None = None
    room_number: str | None = None


class SlotUpsertResult(BaseModel):
    success: bool = True
    cleared: bool = False
    slot: SlotOut | None = None
    conflicting_classes: list[str] = Field(default_factory=list)


class ClassTimetableOut(BaseModel):
    class_id: str
    class_name: str
    periods: list[PeriodOut]
    slots: list[SlotOut]


class TeacherTimetableOut(BaseModel):
    teacher_id: str
    teacher_name: str
    periods: list[PeriodOut]
    slots: list[SlotOut]


class ClassGenerationResult(BaseModel):
    class_id: str
    class_name: str
    success: bool = True
    message: str
    slots_created: int = 0
    unplaced_instances: int = 0
    skipped_allocations: list[str] = Field(default_factory=list)


class GenerationResult(BaseModel):
    success: bool
    message: str
    slots_created: int = 0
    unplaced_instances: int = 0
    skipped_allocations: list[str] = Field(default_factory=list)
    results: list[ClassGenerationResult] = Field(default_factory=list)


class OverviewTeacher(BaseModel):
    id: str
    name: str


class OverviewSubject(BaseModel):
    id: str
    name: str
    code: str | None = None


class OverviewClass(BaseModel):
    id: str
    name: str
    grade_level: int | None = None
    section: str | None = None
    allocations: list[AllocationOut]


class TimetableOverviewOut(BaseModel):
    period_duration_minutes: int
    periods: list[PeriodOut]
    classes: list[OverviewClass]
    teachers: list[OverviewTeacher]
    subjects: list[OverviewSubject]
