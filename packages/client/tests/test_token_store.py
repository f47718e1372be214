"""Tests for the SQLite token store."""

from datetime import datetime, timedelta, timezone

from crm_client.token_store import TokenStore

URL = "http://crm.example.com"


def _in(hours: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


async def test_save_and_load(store):
    await store.save(URL, "tok", "user-1", _in(1))
    stored = await store.load(URL)
    assert stored.token == "tok"
    assert stored.user_id == "user-1"
    assert not stored.expired


async def test_missing(store):
    assert await store.load(URL) is None


async def test_save_replaces_existing(store):
    await store.save(URL, "first", "user-1", _in(1))
    await store.save(URL, "second", "user-2", _in(2))
    stored = await store.load(URL)
    assert stored.token == "second"
    assert stored.user_id == "user-2"


async def test_expired_entry_is_dropped(store):
    await store.save(URL, "old", "user-1", _in(-1))
    assert await store.load(URL) is None
    # Cleared, not just hidden.
    await store.save(URL, "new", "user-1", _in(1))
    assert (await store.load(URL)).token == "new"


async def test_naive_expiry_treated_as_utc(store):
    naive = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(tzinfo=None)
    await store.save(URL, "tok", "user-1", naive)
    stored = await store.load(URL)
    assert stored.expires_at.tzinfo is not None


async def test_servers_are_separate(store):
    await store.save(URL, "a", "user-1", _in(1))
    await store.save("http://other.example.com", "b", "user-9", _in(1))
    await store.clear(URL)
    assert await store.load(URL) is None
    assert (await store.load("http://other.example.com")).token == "b"


async def test_creates_parent_directory(tmp_path):
    path = tmp_path / "deep" / "nested" / "tokens.db"
    s = TokenStore(str(path))
    await s.open()
    try:
        assert path.exists()
    finally:
        await s.close()
