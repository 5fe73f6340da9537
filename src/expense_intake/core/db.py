from __future__ import annotations

import re
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from expense_intake.core.config import settings

_url = make_url(settings.database_url)
_connect_args: dict = {}
if _url.drivername.startswith("sqlite"):
    _connect_args = {"check_same_thread": False}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Postgres reports 42703; sqlite and mysql only say it in the message.
_UNKNOWN_COLUMN_RE = re.compile(
    r"column .+ does not exist|has no column named|no such column|unknown column",
    re.I,
)


def db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def is_unknown_column_error(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) == "42703" or getattr(orig, "sqlstate", None) == "42703":
        return True
    return bool(_UNKNOWN_COLUMN_RE.search(str(orig or exc)))
