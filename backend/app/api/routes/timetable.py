from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_school, get_db, require_school_admin
from app.models.school import School
from app.models.user import User
from app.schemas.timetable import (
    ClassTimetableOut,
    GenerationResult,
    SlotUpsert,
    SlotUpsertResult,
    TeacherTimetableOut,
    TimetableOverviewOut,
)
from app.services import timetable_service

router = APIRouter()


@router.get("/overview", response_model=TimetableOverviewOut)
def get_overview(school: School = Depends(get_current_school), db: Session = Depends(get_db)) -> TimetableOverviewOut:
    return timetable_service.get_timetable_overview(db, school)


@router.get("/classes/{class_id}", response_model=ClassTimetableOut)
def get_class_timetable(
    class_id: str,
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> ClassTimetableOut:
    return timetable_service.get_class_timetable(db, school, class_id)


@router.get("/teachers/{teacher_id}", response_model=TeacherTimetableOut)
def get_teacher_timetable(
    teacher_id: str,
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> TeacherTimetableOut:
    return timetable_service.get_teacher_timetable(db, school, teacher_id)


@router.post("/classes/{class_id}/generate", response_model=GenerationResult)
def generate_class_timetable(
    class_id: str,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> GenerationResult:
    """Rebuild one class timetable. Manual edits of that class are replaced."""
    return timetable_service.generate_class_timetable(db, school, class_id, actor=current_user)


@router.post("/generate", response_model=GenerationResult)
def generate_all_classes_timetable(
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> GenerationResult:
    """Rebuild every class timetable of the school. All existing slots are replaced."""
    return timetable_service.generate_all_classes_timetable(db, school, actor=current_user)


@router.put("/slots", response_model=SlotUpsertResult)
def upsert_slot(
    payload: SlotUpsert,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> SlotUpsertResult:
    return timetable_service.upsert_slot(db, school, payload, actor=current_user)


@router.delete("/slots/{class_id}/{period_id}/{day_of_week}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    class_id: str,
    period_id: str,
    day_of_week: int = Path(ge=0, le=6),
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> None:
    timetable_service.delete_slot(db, school, class_id, period_id, day_of_week, actor=current_user)
