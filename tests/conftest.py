from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


# Commits made by test helpers and by GitPython need an identity even on
# machines without a global git config.
os.environ.setdefault("GIT_AUTHOR_NAME", "gittree tests")
os.environ.setdefault("GIT_AUTHOR_EMAIL", "tests@gittree.invalid")
os.environ.setdefault("GIT_COMMITTER_NAME", "gittree tests")
os.environ.setdefault("GIT_COMMITTER_EMAIL", "tests@gittree.invalid")
os.environ["GITTREE_LOG_DISABLE_FILE"] = "1"


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(scope="session")
def anyio_backend():
    """Run anyio tests on asyncio only; the async facade uses asyncio.to_thread."""
    return "asyncio"
