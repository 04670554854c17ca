import os
import sys

import pytest

# Backend modules are plain scripts in ./backend; make them importable.
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_DIR = os.path.abspath(os.path.join(CURRENT_DIR, "..", "backend"))
if BACKEND_DIR not in sys.path:
    sys.path.append(BACKEND_DIR)

from fastapi.testclient import TestClient  # noqa: E402

from api import create_app  # noqa: E402
from config import Settings  # noqa: E402
from storage import Database  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "data" / "store_metrics.db"),
        upload_dir=str(tmp_path / "uploads"),
        rate_limit_max=0,
    )


@pytest.fixture
def db(settings):
    with Database(settings.db_path) as database:
        yield database


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def make_csv(tmp_path):
    """Write CSV text to a file under tmp_path and return its path."""

    def _make(text: str, name: str = "input.csv") -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _make


def csv_text(header, rows):
    lines = [",".join(header)]
    lines += [",".join(str(v) for v in r) for r in rows]
    return "\n".join(lines) + "\n"


def upload(client, text: str, filename: str = "data.csv"):
    return client.post(
        "/upload",
        files={"file": (filename, text.encode("utf-8"), "text/csv")},
    )
