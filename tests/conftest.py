"""Shared fixtures for the HomeAccess test suite.

Provides a Flask test client wired to a temporary SQLite database and a
few listing builders.  No test touches the network.
"""

import atexit
import os
import sys
import tempfile

import pytest

# Flat layout: make the project root importable when pytest runs from tests/.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["HOMEACCESS_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ.pop("SENTRY_DSN", None)

from app import app  # noqa: E402
from listing_scraper import PropertyListing  # noqa: E402
from models import init_db, _get_db  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty the result cache before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    conn.execute("DELETE FROM analysis_results")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with rate limiting disabled."""
    app.config["TESTING"] = True
    app.config["RATELIMIT_ENABLED"] = False
    from app import limiter
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


def make_listing(**overrides):
    """PropertyListing for a dummy Rightmove URL; fields default to empty."""
    overrides.setdefault("url", "https://www.rightmove.co.uk/properties/123456789")
    return PropertyListing(**overrides)


@pytest.fixture()
def listing_factory():
    return make_listing
