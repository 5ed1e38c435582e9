import json

import pytest

from app.history import (
    SCHEMA_VERSION,
    HistoryFormatError,
    JsonFileHistoryStore,
    MemoryHistoryStore,
)
from app.models import HistoryItem, Utterance


@pytest.fixture
def history_path(tmp_path):
    return str(tmp_path / "history.json")


def _item(item_id, name, lyrics=None, utterances=None):
    return HistoryItem(
        id=item_id,
        file_name=name,
        timestamp=f"2024-05-0{item_id % 9 + 1}T10:00:00.000Z",
        utterances=utterances,
        lyrics=lyrics,
    )


def test_round_trip_preserves_items_and_order(history_path):
    store = JsonFileHistoryStore(history_path)
    appended = [
        _item(1, "first.mp3", lyrics="Walking home tonight"),
        _item(2, "second.wav", utterances=[Utterance("A", "hi"), Utterance("B", "hello")]),
        _item(3, "third.flac"),
    ]
    for item in appended:
        store.append(item)

    reloaded = JsonFileHistoryStore(history_path).list()

    assert reloaded == appended
    assert reloaded[2].lyrics is None
    assert reloaded[2].utterances is None


def test_file_uses_versioned_envelope(history_path):
    JsonFileHistoryStore(history_path).append(_item(1, "a.mp3", lyrics="la"))

    with open(history_path, encoding="utf-8") as f:
        raw = json.load(f)

    assert raw["version"] == SCHEMA_VERSION
    assert raw["items"] == [
        {"id": 1, "fileName": "a.mp3", "timestamp": "2024-05-02T10:00:00.000Z", "lyrics": "la"},
    ]


def test_capacity_evicts_oldest(history_path):
    store = JsonFileHistoryStore(history_path, capacity=2)
    for i in range(1, 5):
        store.append(_item(i, f"{i}.mp3"))

    assert [item.id for item in store.list()] == [3, 4]


def test_clear_empties_store(history_path):
    store = JsonFileHistoryStore(history_path)
    store.append(_item(1, "a.mp3"))

    store.clear()

    assert store.list() == []
    assert JsonFileHistoryStore(history_path).list() == []


def test_missing_file_reads_as_empty(history_path):
    assert JsonFileHistoryStore(history_path).list() == []


def test_legacy_bare_array_is_migrated(history_path):
    legacy = [
        {
            "id": 1715000000000,
            "fileName": "old.mp3",
            "utterances": [{"speaker": "A", "text": "hey"}],
            "timestamp": "2024-05-06T12:53:20.000Z",
        },
        {"id": 1715000000500, "fileName": "older.mp3", "timestamp": "2024-05-06T12:53:20.500Z", "lyrics": "x"},
    ]
    with open(history_path, "w", encoding="utf-8") as f:
        json.dump(legacy, f)

    store = JsonFileHistoryStore(history_path)
    items = store.list()

    assert [item.file_name for item in items] == ["old.mp3", "older.mp3"]
    assert items[0].utterances == [Utterance("A", "hey")]

    store.append(_item(3, "new.mp3"))
    with open(history_path, encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["version"] == SCHEMA_VERSION
    assert len(raw["items"]) == 3


def test_invalid_records_are_skipped(history_path):
    with open(history_path, "w", encoding="utf-8") as f:
        json.dump({
            "version": 1,
            "items": [
                {"id": 1, "fileName": "ok.mp3", "timestamp": "t"},
                {"id": "two", "fileName": "bad-id.mp3", "timestamp": "t"},
                {"id": 3, "timestamp": "t"},
                "not a record",
            ],
        }, f)

    items = JsonFileHistoryStore(history_path).list()

    assert [item.file_name for item in items] == ["ok.mp3"]


def test_invalid_records_survive_later_writes(history_path):
    bad_record = {"id": 2, "timestamp": 1715000000}
    with open(history_path, "w", encoding="utf-8") as f:
        json.dump([{"id": 1, "fileName": "ok.mp3", "timestamp": "t"}, bad_record], f)

    store = JsonFileHistoryStore(history_path)
    store.append(_item(3, "new.mp3"))
    store.record("newer.mp3")

    with open(history_path, encoding="utf-8") as f:
        raw = json.load(f)
    assert [item["fileName"] for item in raw["items"]] == ["ok.mp3", "new.mp3", "newer.mp3"]
    assert raw["invalid"] == [bad_record]
    assert [item.file_name for item in JsonFileHistoryStore(history_path).list()] == [
        "ok.mp3", "new.mp3", "newer.mp3",
    ]


def test_clear_also_drops_invalid_records(history_path):
    with open(history_path, "w", encoding="utf-8") as f:
        json.dump({"version": 1, "items": [], "invalid": [{"id": "x"}]}, f)

    JsonFileHistoryStore(history_path).clear()

    with open(history_path, encoding="utf-8") as f:
        assert json.load(f) == {"version": SCHEMA_VERSION, "items": []}


def test_newer_version_is_rejected_and_not_overwritten(history_path):
    content = json.dumps({"version": SCHEMA_VERSION + 1, "items": []})
    with open(history_path, "w", encoding="utf-8") as f:
        f.write(content)

    store = JsonFileHistoryStore(history_path)
    with pytest.raises(HistoryFormatError):
        store.list()
    with pytest.raises(HistoryFormatError):
        store.append(_item(1, "a.mp3"))

    with open(history_path, encoding="utf-8") as f:
        assert f.read() == content


def test_corrupt_file_raises(history_path):
    with open(history_path, "w", encoding="utf-8") as f:
        f.write("{not json")

    with pytest.raises(HistoryFormatError):
        JsonFileHistoryStore(history_path).list()


def test_record_stamps_increasing_ids():
    store = MemoryHistoryStore()

    first = store.record("a.mp3", lyrics="one")
    second = store.record("b.mp3")

    assert second.id > first.id
    assert first.timestamp.endswith("Z")
    assert [item.file_name for item in store.list()] == ["a.mp3", "b.mp3"]


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        MemoryHistoryStore(capacity=0)
