"""Unit tests for models.py, the SQLite result cache.

Covers: key normalisation, TTL checks, write-once puts, expiry
replacement, bounded eviction, corrupt rows, and connection cleanup
when SQLite raises.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from models import ResultCache, _get_db, _is_expired, cache_key

URL = "https://www.rightmove.co.uk/properties/123456789"


def _result(overall=3.5):
    return {"property": {"url": URL}, "analysis": {"overall": overall, "rating": "Good"}}


def _age_row(cache, url, hours):
    created = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
    conn = _get_db(cache.db_path)
    conn.execute(
        "UPDATE analysis_results SET created_at = ? WHERE cache_key = ?",
        (created, cache_key(url)),
    )
    conn.commit()
    conn.close()


@pytest.fixture()
def cache(tmp_path):
    return ResultCache(db_path=str(tmp_path / "cache.db"), ttl_hours=24, max_entries=10)


# =========================================================================
# Keys and TTL
# =========================================================================

class TestCacheKey:
    def test_deterministic(self):
        assert cache_key(URL) == cache_key(URL)

    def test_query_fragment_and_slash_ignored(self):
        assert cache_key(URL) == cache_key(URL + "/?channel=RES_BUY#/media")

    def test_case_and_whitespace_ignored(self):
        assert cache_key("  " + URL.upper() + " ") == cache_key(URL)

    def test_different_listings_differ(self):
        assert cache_key(URL) != cache_key(URL.replace("123", "987"))


class TestIsExpired:
    def test_recent(self):
        recent = datetime.now(timezone.utc).isoformat()
        assert _is_expired(recent, timedelta(hours=1)) is False

    def test_old(self):
        old = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        assert _is_expired(old, timedelta(hours=1)) is True

    def test_naive_timestamp_treated_as_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None).isoformat()
        assert _is_expired(naive, timedelta(hours=1)) is False

    @pytest.mark.parametrize("value", [None, "", "not-a-date"])
    def test_unparseable_is_expired(self, value):
        assert _is_expired(value, timedelta(hours=1)) is True


# =========================================================================
# ResultCache
# =========================================================================

class TestResultCache:
    def test_round_trip(self, cache):
        assert cache.put(URL, _result()) is True
        assert cache.get(URL) == _result()
        assert len(cache) == 1

    def test_miss(self, cache):
        assert cache.get(URL) is None

    def test_normalised_url_hits(self, cache):
        cache.put(URL, _result())
        assert cache.get(URL + "?utm_source=email") == _result()

    def test_write_once(self, cache):
        assert cache.put(URL, _result(3.5)) is True
        assert cache.put(URL, _result(1.0)) is False
        assert cache.get(URL)["analysis"]["overall"] == 3.5

    def test_expired_entry_not_returned(self, cache):
        cache.put(URL, _result())
        _age_row(cache, URL, hours=25)
        assert cache.get(URL) is None

    def test_expired_entry_replaced(self, cache):
        cache.put(URL, _result(3.5))
        _age_row(cache, URL, hours=25)
        assert cache.put(URL, _result(4.0)) is True
        assert cache.get(URL)["analysis"]["overall"] == 4.0
        assert len(cache) == 1

    def test_oldest_evicted_beyond_max_entries(self, tmp_path):
        cache = ResultCache(db_path=str(tmp_path / "small.db"), max_entries=2)
        first, second, third = (URL.replace("123", str(n)) for n in (111, 222, 333))
        cache.put(first, _result())
        cache.put(second, _result())
        _age_row(cache, first, hours=2)
        _age_row(cache, second, hours=1)
        cache.put(third, _result())
        assert len(cache) == 2
        assert cache.get(first) is None
        assert cache.get(second) is not None
        assert cache.get(third) is not None

    def test_corrupt_row_is_a_miss(self, cache):
        cache.put(URL, _result())
        conn = _get_db(cache.db_path)
        conn.execute("UPDATE analysis_results SET result_json = '{broken'")
        conn.commit()
        conn.close()
        assert cache.get(URL) is None

    def test_overall_column_recorded(self, cache):
        cache.put(URL, _result(2.7))
        conn = _get_db(cache.db_path)
        row = conn.execute("SELECT overall, url FROM analysis_results").fetchone()
        conn.close()
        assert row["overall"] == 2.7
        assert row["url"] == URL

    @pytest.mark.parametrize("kwargs", [{"ttl_hours": 0}, {"max_entries": 0}])
    def test_invalid_bounds(self, tmp_path, kwargs):
        with pytest.raises(ValueError):
            ResultCache(db_path=str(tmp_path / "bad.db"), **kwargs)


class TestConnectionCleanup:
    """Connections are closed even when SQLite raises mid-query."""

    def _failing_conn(self):
        conn = MagicMock()
        conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")
        return conn

    def test_get_closes_on_error(self, cache):
        conn = self._failing_conn()
        with patch("models._get_db", return_value=conn):
            assert cache.get(URL) is None
        conn.close.assert_called_once()

    def test_put_closes_on_error(self, cache):
        conn = self._failing_conn()
        with patch("models._get_db", return_value=conn):
            assert cache.put(URL, _result()) is False
        conn.close.assert_called_once()
        conn.commit.assert_not_called()

    def test_len_closes_on_error(self, cache):
        conn = self._failing_conn()
        with patch("models._get_db", return_value=conn):
            with pytest.raises(sqlite3.OperationalError):
                len(cache)
        conn.close.assert_called_once()
