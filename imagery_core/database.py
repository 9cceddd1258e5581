from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlmodel import Session, SQLModel, create_engine

IMAGERY_DATA_DIR_ENV = "IMAGERY_DATA_DIR"
IMAGERY_DATABASE_URL_ENV = "IMAGERY_DATABASE_URL"

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv(IMAGERY_DATA_DIR_ENV, "").strip() or BASE_DIR / "data").expanduser()
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = DATA_DIR / "imagery.db"
DATABASE_URL = os.getenv(IMAGERY_DATABASE_URL_ENV, "").strip() or f"sqlite:///{DB_PATH}"

# SQLite connections are shared between the event loop and the worker threads
# FastAPI runs sync endpoints in.
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db() -> None:
    """Create the usage and export tables if they do not exist."""

    from . import models  # noqa: F401 registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for code running outside a request, such as the tile workers."""

    with Session(engine) as session:
        yield session


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
