import json

from service.state_store import JsonStateStore


def test_creates_missing_file(tmp_path):
    path = tmp_path / "data" / "db.json"
    store = JsonStateStore(path)

    assert path.exists()
    assert store.get_sync() == {}


async def test_merge_keeps_other_keys(tmp_path):
    path = tmp_path / "db.json"
    path.write_text(json.dumps({"Discord": {"guildChannels": {"1": 2}}}), encoding="utf-8")
    store = JsonStateStore(path)

    await store.merge("Twitch", {"accessToken": "a"})

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"Discord": {"guildChannels": {"1": 2}}, "Twitch": {"accessToken": "a"}}
    assert await store.get() == data


async def test_set_uses_current_blob(tmp_path):
    store = JsonStateStore(tmp_path / "db.json")
    await store.merge("a", 1)

    result = await store.set(lambda data: {**data, "b": data["a"] + 1})

    assert result == {"a": 1, "b": 2}
    assert store.get_sync() == {"a": 1, "b": 2}


def test_invalid_json_reads_as_empty(tmp_path):
    path = tmp_path / "db.json"
    path.write_text("{not json", encoding="utf-8")

    assert JsonStateStore(path).get_sync() == {}


async def test_write_leaves_no_temp_files(tmp_path):
    store = JsonStateStore(tmp_path / "db.json")
    await store.merge("Twitch", {"x": 1})

    assert sorted(p.name for p in tmp_path.iterdir()) == ["db.json"]
