from pydantic import BaseModel
from typing import List, Optional

class ConflictClassEntry(BaseModel):
    class_id: str
    class_name: str
    subject_name: str
    slot_id: Optional[str] = None

class TeacherConflict(BaseModel):
    teacher_id: str
    teacher_name: str
    period_id: str
    period_name: str
    period_time: str
    day_of_week: int
    day_name: str
    classes: List[ConflictClassEntry]

class ConflictReport(BaseModel):
    conflicts: List[TeacherConflict]
