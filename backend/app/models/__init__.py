from app.models.activity_log import ActivityLog  # noqa: F401
from app.models.class_subject import ClassSubject  # noqa: F401
from app.models.period import Period  # noqa: F401
from app.models.school import School  # noqa: F401
from app.models.school_class import SchoolClass  # noqa: F401
from app.models.subject import Subject  # noqa: F401
from app.models.timetable import TimetableSlot  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
