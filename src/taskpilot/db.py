from __future__ import annotations

import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlmodel import Session, create_engine, select

from taskpilot.models import CalendarConnection, WorkingHours

DEFAULT_OWNER_ID = 1

# /src/taskpilot/db.py -> project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = PROJECT_ROOT / ".data" / "taskpilot.sqlite"


def get_db_path() -> Path:
    db_path_env = os.getenv("TASKPILOT_DB_PATH")
    if not db_path_env:
        return DEFAULT_DB_PATH

    candidate = Path(db_path_env).expanduser()
    if candidate.is_absolute():
        return candidate
    return (Path.cwd() / candidate).resolve()


def ensure_db_directory() -> Path:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


def get_database_url(*, ensure_directory: bool = False) -> str:
    db_path = ensure_db_directory() if ensure_directory else get_db_path()
    return f"sqlite:///{db_path}"


def get_engine(*, ensure_directory: bool = False):
    return create_engine(
        get_database_url(ensure_directory=ensure_directory),
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def apply_migrations() -> None:
    ensure_db_directory()

    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", get_database_url(ensure_directory=True))
    command.upgrade(alembic_cfg, "head")


def seed_defaults(owner_id: int = DEFAULT_OWNER_ID) -> None:
    engine = get_engine(ensure_directory=True)

    with Session(engine) as session:
        hours = session.exec(select(WorkingHours).where(WorkingHours.owner_id == owner_id)).first()
        if hours is None:
            session.add(WorkingHours(owner_id=owner_id))

        connection = session.exec(
            select(CalendarConnection).where(CalendarConnection.owner_id == owner_id)
        ).first()
        if connection is None:
            session.add(CalendarConnection(owner_id=owner_id))

        session.commit()


def initialize_database() -> Path:
    apply_migrations()
    seed_defaults()
    return get_db_path()
