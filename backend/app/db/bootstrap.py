from __future__ import annotations

import logging

from sqlalchemy import inspect, text

import app.models  # noqa: F401
from app.db.base import Base
from app.db.session import engine

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "schools": {"id", "slug", "period_duration_minutes"},
    "users": {"id", "school_id", "role", "is_active"},
    "classes": {"id", "school_id", "name", "grade_level", "section"},
    "class_subjects": {"id", "class_id", "subject_id", "teacher_id", "hours_per_week", "sequence"},
    "periods": {"id", "school_id", "start_time", "end_time", "period_order", "is_break"},
    "timetable_slots": {"id", "class_id", "period_id", "day_of_week", "class_subject_id", "teacher_id", "room_number"},
}


def _ensure_schools_period_duration_column() -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        if "schools" not in set(inspector.get_table_names()):
            return
        column_names = {item["name"] for item in inspector.get_columns("schools")}
        if "period_duration_minutes" in column_names:
            return
        connection.execute(text("ALTER TABLE schools ADD COLUMN period_duration_minutes INTEGER"))


def _assert_required_columns() -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = [name for name in REQUIRED_COLUMNS if name not in table_names]
        if missing_tables:
            raise RuntimeError(f"Missing required tables: {', '.join(sorted(missing_tables))}")

        missing_columns: list[str] = []
        for table_name, required in REQUIRED_COLUMNS.items():
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            for column_name in sorted(required - existing):
                missing_columns.append(f"{table_name}.{column_name}")
        if missing_columns:
            raise RuntimeError(f"Missing required columns: {', '.join(missing_columns)}")


def ensure_runtime_schema_compatibility() -> None:
    try:
        # Ensure missing tables are present before additive compatibility patches.
        Base.metadata.create_all(bind=engine)
        _ensure_schools_period_duration_column()
        _assert_required_columns()
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema compatibility bootstrap failed")
        raise RuntimeError("Runtime schema compatibility bootstrap failed") from exc
