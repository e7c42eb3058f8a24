from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_school, get_db, require_school_admin
from app.models.school import School
from app.models.user import User
from app.schemas.timetable import (
    AllocationBulkUpdate,
    AllocationListOut,
    AllocationUpdate,
    AllocationValidationOut,
)
from app.services import allocations as allocation_service

router = APIRouter()


@router.get("/classes/{class_id}/allocations", response_model=AllocationListOut)
def list_allocations(
    class_id: str,
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> AllocationListOut:
    return allocation_service.list_allocations(db, school, class_id)


@router.get("/classes/{class_id}/allocations/validation", response_model=AllocationValidationOut)
def validate_allocations(
    class_id: str,
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> AllocationValidationOut:
    return allocation_service.validate_allocations(db, school, class_id)


@router.put("/allocations/{class_subject_id}")
def update_allocation(
    class_subject_id: str,
    payload: AllocationUpdate,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> dict:
    class_subject = allocation_service.update_allocation(
        db, school, class_subject_id, payload.hours_per_week, actor=current_user
    )
    return {"success": True, "id": class_subject.id, "hours_per_week": float(class_subject.hours_per_week)}


@router.put("/allocations")
def bulk_update_allocations(
    payload: AllocationBulkUpdate,
    current_user: User = Depends(require_school_admin),
    school: School = Depends(get_current_school),
    db: Session = Depends(get_db),
) -> dict:
    updated = allocation_service.bulk_update_allocations(db, school, payload.allocations, actor=current_user)
    return {"success": True, "updated": len(updated)}
