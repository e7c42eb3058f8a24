from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_school, get_db, require_school_admin
from app.models.school import School
from app.models.user import User
from app.schemas.timetable import PeriodBulkReplace, PeriodCreate, PeriodOut, PeriodUpdate
from app.services import periods as period_service

router = APIRouter()


@router.get("/periods", response_model=list[PeriodOut])
def list_periods(school: School = Depends(get_current_school), db: Session = Depends(get_db)) -> list[PeriodOut]:
    return period_service.list_periods(db, school.id)


@router.post("/periods", response_model=PeriodOut, status_code=status.HTTP_201_CREATED)
def create_period(
    payload: PeriodCreate,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> PeriodOut:
    return period_service.create_period(db, school, payload, actor=current_user)


@router.put("/periods", response_model=list[PeriodOut])
def replace_periods(
    payload: PeriodBulkReplace,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> list[PeriodOut]:
    """Replace the whole catalog. Existing timetable slots of the school are removed."""
    return period_service.replace_periods(db, school, payload.periods, actor=current_user)


@router.patch("/periods/{period_id}", response_model=PeriodOut)
def update_period(
    period_id: str,
    payload: PeriodUpdate,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> PeriodOut:
    return period_service.update_period(db, school, period_id, payload, actor=current_user)


@router.delete("/periods/{period_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_period(
    period_id: str,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> None:
    period_service.delete_period(db, school, period_id, actor=current_user)
