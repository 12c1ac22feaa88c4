# pyright: reportUnusedFunction=false
from __future__ import annotations

from collections.abc import Iterator
import os
from pathlib import Path
import shutil
import sys
import tempfile

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

_WORK_DIR = Path(tempfile.mkdtemp(prefix="portraitist-tests-"))
UPLOAD_DIR = _WORK_DIR / "uploads"
PROTECTED_DIR = _WORK_DIR / "protected"

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_WORK_DIR / 'test.db'}")
os.environ["UPLOAD_DIR"] = str(UPLOAD_DIR)
os.environ["PROTECTED_DIR"] = str(PROTECTED_DIR)
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["GENERATION_PROVIDER"] = "fake"
os.environ["VISION_MODE"] = "fake"
os.environ["GENERATION_DEDUP_POLICY"] = "off"
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")


def _ensure_test_schema() -> None:
    from portraitist.db.base import Base
    from portraitist.db.session import engine

    Base.metadata.create_all(bind=engine)


_ensure_test_schema()


@pytest.fixture(autouse=True)
def _isolate_db() -> None:
    from portraitist.db.base import Base
    from portraitist.db.session import engine

    tables = list(Base.metadata.sorted_tables)
    with engine.begin() as conn:
        for t in reversed(tables):
            _ = conn.execute(t.delete())


@pytest.fixture(autouse=True)
def _isolate_files() -> Iterator[None]:
    for d in (UPLOAD_DIR, PROTECTED_DIR):
        shutil.rmtree(d, ignore_errors=True)
        d.mkdir(parents=True, exist_ok=True)
    yield


@pytest.fixture()
def vendor() -> Iterator[object]:
    from portraitist.main import app
    from portraitist.services.analysis import FakeVisionAnalyzer, get_analyzer
    from portraitist.services.vendors import get_vendor
    from portraitist.services.vendors.fake import FakeVendor

    fake = FakeVendor()
    app.dependency_overrides[get_vendor] = lambda: fake
    app.dependency_overrides[get_analyzer] = FakeVisionAnalyzer
    try:
        yield fake
    finally:
        _ = app.dependency_overrides.pop(get_vendor, None)
        _ = app.dependency_overrides.pop(get_analyzer, None)
