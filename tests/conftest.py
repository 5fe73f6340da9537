from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any expense_intake imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.expense_intake_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("RECOGNITION_LEGACY_ENABLED", "false")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import expense_intake.models  # noqa: F401
    from expense_intake.core.db import engine
    from expense_intake.core.models import Base

    # Reset storage cache and directory
    import expense_intake.core.storage as storage_mod

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@pytest.fixture
def recognition_payload(monkeypatch):
    """Replace the recognition HTTP call with a canned payload; returns the call log."""
    from expense_intake.modules.extraction import recognition

    calls: list[dict] = []
    state: dict = {"payload": {"success": True, "data": {}}}

    def _stub(request, *, config=None):
        calls.append({"filename": request.filename, "signed_url": request.signed_url})
        return state["payload"]

    monkeypatch.setattr(recognition, "recognize_document", _stub)

    class _Handle:
        def set(self, payload: dict) -> None:
            state["payload"] = payload

        @property
        def calls(self) -> list[dict]:
            return calls

    return _Handle()
