"""Tests for the key/value state store."""

import json
from unittest.mock import patch

import pytest

from xauto.store.state_store import StateStore


class TestInMemoryStateStore:
    """Behaviour without a backing file."""

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self):
        assert await StateStore().get("nope") is None

    @pytest.mark.asyncio
    async def test_upsert_set_merges_fields(self):
        kv = StateStore()
        await kv.upsert_set("budget:2026-03", {"usage": 1.0, "date": "2026-03-01"})
        await kv.upsert_set("budget:2026-03", {"usage": 2.5})

        assert await kv.get("budget:2026-03") == {"usage": 2.5, "date": "2026-03-01"}

    @pytest.mark.asyncio
    async def test_replace_drops_old_fields(self):
        kv = StateStore()
        await kv.upsert_set("oauth:tokens", {"access_token": "a", "user_id": "1"})
        await kv.replace("oauth:tokens", {"access_token": "b"})

        assert await kv.get("oauth:tokens") == {"access_token": "b"}

    @pytest.mark.asyncio
    async def test_delete(self):
        kv = StateStore()
        await kv.replace("oauth:state:abc", {"code_verifier": "v"})
        await kv.delete("oauth:state:abc")
        await kv.delete("oauth:state:missing")

        assert await kv.get("oauth:state:abc") is None

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self):
        kv = StateStore()
        await kv.replace("k", {"items": [1]})

        value = await kv.get("k")
        value["items"].append(2)

        assert await kv.get("k") == {"items": [1]}


class TestPersistentStateStore:
    """Behaviour with a JSON file."""

    @pytest.mark.asyncio
    async def test_creates_file_and_parent_dirs(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        kv = StateStore(path)
        await kv.replace("sync:last_run_at", {"at": "2026-03-10T04:00:00+00:00"})

        assert json.loads(path.read_text(encoding="utf-8")) == {
            "sync:last_run_at": {"at": "2026-03-10T04:00:00+00:00"}
        }

    @pytest.mark.asyncio
    async def test_reloads_from_disk(self, tmp_path):
        path = tmp_path / "state.json"
        await StateStore(path).replace("prompt:digest_system", {"text": "自定义"})

        reopened = StateStore(path)
        assert await reopened.get("prompt:digest_system") == {"text": "自定义"}

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        assert await StateStore(tmp_path / "absent.json").get("anything") is None

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_file(self, tmp_path):
        path = tmp_path / "state.json"
        kv = StateStore(path)
        await kv.replace("oauth:tokens", {"access_token": "a"})

        def dump_halfway(data, f, **kwargs):
            f.write('{"oauth:tok')
            raise OSError("No space left on device")

        with patch("xauto.store.state_store.json.dump", side_effect=dump_halfway):
            with pytest.raises(OSError):
                await kv.replace("oauth:tokens", {"access_token": "b"})

        assert json.loads(path.read_text(encoding="utf-8")) == {
            "oauth:tokens": {"access_token": "a"}
        }
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
