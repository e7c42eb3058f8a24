from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_school, get_db
from app.models.school import School
from app.schemas.conflict import ConflictReport
from app.services.timetable_service import check_all_teacher_conflicts

router = APIRouter()


@router.get("/teachers", response_model=ConflictReport)
def detect_teacher_conflicts(
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> ConflictReport:
    # Manual edits bypass the generator, so callers re-run this after every edit.
    return check_all_teacher_conflicts(db, school)


@router.get("/teachers/{teacher_id}", response_model=ConflictReport)
def detect_conflicts_for_teacher(
    teacher_id: str,
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> ConflictReport:
    return check_all_teacher_conflicts(db, school, teacher_id=teacher_id)
