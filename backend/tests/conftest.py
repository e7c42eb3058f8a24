import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.api.deps import get_db  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.models.class_subject import ClassSubject  # noqa: E402
from app.models.period import Period  # noqa: E402
from app.models.school import School  # noqa: E402
from app.models.school_class import SchoolClass  # noqa: E402
from app.models.subject import Subject  # noqa: E402
from app.models.user import User, UserRole  # noqa: E402
from app.services.schedule_locks import clear_schedule_locks  # noqa: E402


class SchoolBuilder:
    """Seeds one school straight through the ORM; classes, subjects and users have no API here."""

    def __init__(self, db, name: str = "Green Valley School") -> None:
        self.db = db
        self.school = School(name=name, slug=f"school-{uuid.uuid4().hex[:8]}")
        db.add(self.school)
        db.commit()

    def periods(self, count: int, *, break_after: tuple[int, ...] = (), minutes: int = 45) -> list[Period]:
        """``count`` teaching periods from 08:00, with a 15 minute break after the listed teaching periods."""
        created: list[Period] = []
        clock = 8 * 60
        order = 1
        for number in range(1, count + 1):
            start, clock = clock, clock + minutes
            created.append(
                Period(
                    school_id=self.school.id,
                    name=f"Period {number}",
                    start_time=f"{start // 60:02d}:{start % 60:02d}",
                    end_time=f"{clock // 60:02d}:{clock % 60:02d}",
                    order=order,
                    is_break=False,
                )
            )
            order += 1
            if number in break_after:
                start, clock = clock, clock + 15
                created.append(
                    Period(
                        school_id=self.school.id,
                        name="Break",
                        start_time=f"{start // 60:02d}:{start % 60:02d}",
                        end_time=f"{clock // 60:02d}:{clock % 60:02d}",
                        order=order,
                        is_break=True,
                    )
                )
                order += 1
        self.db.add_all(created)
        self.db.commit()
        return created

    def user(self, first_name: str, role: UserRole, last_name: str = "Doe") -> User:
        user = User(
            school_id=self.school.id,
            first_name=first_name,
            last_name=last_name,
            email=f"{first_name.lower()}-{uuid.uuid4().hex[:6]}@example.com",
            role=role,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def admin(self) -> User:
        return self.user("Ada", UserRole.school_admin, last_name="Admin")

    def teacher(self, first_name: str, last_name: str = "Teacher") -> User:
        return self.user(first_name, UserRole.teacher, last_name=last_name)

    def subject(self, name: str) -> Subject:
        subject = Subject(school_id=self.school.id, name=name)
        self.db.add(subject)
        self.db.commit()
        return subject

    def school_class(self, name: str, grade_level: int | None = None, section: str | None = None) -> SchoolClass:
        school_class = SchoolClass(school_id=self.school.id, name=name, grade_level=grade_level, section=section)
        self.db.add(school_class)
        self.db.commit()
        return school_class

    def allocation(
        self,
        school_class: SchoolClass,
        subject: Subject,
        hours_per_week: float,
        teacher: User | None = None,
    ) -> ClassSubject:
        class_subject = ClassSubject(
            class_id=school_class.id,
            subject_id=subject.id,
            teacher_id=teacher.id if teacher is not None else None,
            hours_per_week=hours_per_week,
        )
        self.db.add(class_subject)
        self.db.commit()
        return class_subject


def _auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def school_builder(db):
    return SchoolBuilder(db)


@pytest.fixture()
def school_factory(db):
    def make(name: str) -> SchoolBuilder:
        return SchoolBuilder(db, name=name)

    return make


@pytest.fixture()
def file_session_factory(tmp_path):
    """On-disk database so several threads can hold their own connections."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'timetable.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def builder_for():
    return SchoolBuilder


@pytest.fixture()
def client(session_factory):
    clear_schedule_locks()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    clear_schedule_locks()


@pytest.fixture()
def auth_headers():
    return _auth_headers
