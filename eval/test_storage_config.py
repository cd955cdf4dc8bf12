"""Tests for the JSON blob store and layered configuration."""
import json
import os
import tempfile

import pytest

from beacon.clock import hour_dow, is_valid_timestamp
from beacon.config import Config, load_config, save_config
from beacon.storage import QUEUE_KEY, JsonStore


# ── Storage ─────────────────────────────────────────────────────────


def test_store_round_trips_through_disk():
    """Stored blobs are written as {key: value} and reloaded."""
    with tempfile.TemporaryDirectory() as tmpdir:
        JsonStore(tmpdir).set(QUEUE_KEY, [{"n": 1}])
        with open(os.path.join(tmpdir, f"__{QUEUE_KEY}.json")) as f:
            assert json.load(f) == {QUEUE_KEY: [{"n": 1}]}
        assert JsonStore(tmpdir).get(QUEUE_KEY, []) == [{"n": 1}]


def test_missing_file_returns_default():
    """A key with no file returns the default."""
    with tempfile.TemporaryDirectory() as tmpdir:
        assert JsonStore(tmpdir).get("nothing", "fallback") == "fallback"


def test_corrupted_file_is_backed_up_and_defaulted():
    """Corrupted blobs are copied aside and replaced by the default."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, f"__{QUEUE_KEY}.json")
        with open(path, "w") as f:
            f.write("{not json")

        assert JsonStore(tmpdir).get(QUEUE_KEY, []) == []

        backups = [n for n in os.listdir(tmpdir) if n.startswith(f"__{QUEUE_KEY}.")
                   and n != f"__{QUEUE_KEY}.json"]
        assert len(backups) == 1
        with open(os.path.join(tmpdir, backups[0])) as f:
            assert f.read() == "{not json"


def test_memory_only_store_writes_nothing():
    """persist=False never touches the disk."""
    with tempfile.TemporaryDirectory() as tmpdir:
        target = os.path.join(tmpdir, "data")
        store = JsonStore(target, persist=False)
        store.set(QUEUE_KEY, [1])
        store.force_store()
        assert store.get(QUEUE_KEY) == [1]
        assert not os.path.exists(target)


def test_unserializable_value_stays_in_memory():
    """A value that cannot be encoded is kept in memory and never written."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = JsonStore(tmpdir)
        store.set("bad", {"obj": object()})
        assert "obj" in store.get("bad")
        assert os.listdir(tmpdir) == []


def test_failed_write_keeps_previous_contents():
    """A write that fails leaves the last good blob on disk for the next start."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = JsonStore(tmpdir)
        store.set(QUEUE_KEY, [{"n": 1}, {"n": 2}])
        store.set(QUEUE_KEY, [{"n": 1}, {"n": 2}, {"n": object()}])

        assert len(store.get(QUEUE_KEY)) == 3
        assert JsonStore(tmpdir).get(QUEUE_KEY, []) == [{"n": 1}, {"n": 2}]
        assert sorted(os.listdir(tmpdir)) == [f"__{QUEUE_KEY}.json"]


# ── Clock helpers ───────────────────────────────────────────────────


def test_hour_dow_accepts_seconds_and_millis():
    """hour_dow gives the same answer for 10 and 13 digit timestamps."""
    assert hour_dow(1_700_000_000) == hour_dow(1_700_000_000_000)
    hour, dow = hour_dow(1_700_000_000)
    assert 0 <= hour < 24 and 0 <= dow < 7


def test_timestamp_validation():
    """Only 10 or 13 digit timestamps are valid."""
    assert is_valid_timestamp(1_700_000_000)
    assert is_valid_timestamp(1_700_000_000_000)
    assert not is_valid_timestamp(170_000)
    assert not is_valid_timestamp("soon")


# ── Config ──────────────────────────────────────────────────────────


def test_defaults():
    """Config defaults match the documented heartbeat and queue values."""
    c = Config()
    assert (c.interval, c.queue_size, c.fail_timeout, c.session_update, c.max_events) == \
        (0.5, 1000, 60, 60, 10)
    assert c.post_threshold == 2000
    assert c.enabled


def test_trailing_slash_removed():
    """The server URL loses its trailing slash."""
    assert Config(url="https://stats.example.com/").url == "https://stats.example.com"


@pytest.mark.parametrize("field", ["queue_size", "max_events", "interval"])
def test_rejects_non_positive_limits(field):
    """Non-positive queue_size, max_events or interval raise ValueError."""
    with pytest.raises(ValueError):
        Config(**{field: 0})


def test_sources_layered_file_env_overrides():
    """Overrides beat environment, which beats the config file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "config.json")
        save_config(path, {"url": "https://file.example.com", "app_key": "FILE",
                           "queue_size": 50, "unknown": 1})
        env = {"BEACON_APP_KEY": "ENV", "BEACON_DEBUG": "yes"}

        c = Config.from_sources(path, env=env, storage_path="/tmp/x", city=None)

    assert c.url == "https://file.example.com"
    assert c.app_key == "ENV"
    assert c.debug is True
    assert c.queue_size == 50
    assert c.storage_path == "/tmp/x"
    assert c.city is None


def test_telemetry_off_disables_delivery():
    """telemetry off in the file or BEACON_TELEMETRY=off disables delivery."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "config.json")
        save_config(path, {"telemetry": False})
        assert not Config.from_sources(path, env={}).enabled
    assert not Config.from_sources(env={"BEACON_TELEMETRY": "off"}).enabled


def test_load_config_tolerates_bad_file():
    """Missing or broken config files load as empty."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "config.json")
        assert load_config(path) == {}
        with open(path, "w") as f:
            f.write("[broken")
        assert load_config(path) == {}
