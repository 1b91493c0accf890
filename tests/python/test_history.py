import pytest
from fastapi.testclient import TestClient

from apps.api import main as api
from apps.api.services import history


def _contents(items):
    return [it["content"] for it in items]


@pytest.fixture
def store():
    return history.HistoryStore(history.MemoryBackend(), cap=5)


def test_add_puts_newest_first(store):
    for text in ("A", "B", "C"):
        store.add("u1", "prompts", text)
    assert _contents(store.list("u1", "prompts")) == ["C", "B", "A"]


def test_favorite_is_pinned_then_recency(store):
    items = {text: store.add("u1", "prompts", text) for text in ("A", "B", "C")}
    store.toggle_favorite("u1", "prompts", items["A"]["id"])
    assert _contents(store.list("u1", "prompts")) == ["A", "C", "B"]

    # 解除すると元の新しい順に戻る
    store.toggle_favorite("u1", "prompts", items["A"]["id"])
    assert _contents(store.list("u1", "prompts")) == ["C", "B", "A"]


def test_favorite_middle_item(store):
    items = {text: store.add("u1", "files", text) for text in ("A", "B", "C")}
    updated = store.set_favorite("u1", "files", items["B"]["id"], True)
    assert updated["isFavorite"] is True
    assert _contents(store.list("u1", "files")) == ["B", "C", "A"]


def test_readd_moves_existing_entry_to_front(store):
    first = store.add("u1", "prompts", "A")
    store.add("u1", "prompts", "B")
    store.set_favorite("u1", "prompts", first["id"], True)
    again = store.add("u1", "prompts", "A")
    items = store.list("u1", "prompts")
    assert _contents(items) == ["A", "B"]
    assert again["id"] == first["id"]
    assert items[0]["isFavorite"] is True


def test_cap_drops_oldest_non_favorite(store):
    oldest = store.add("u1", "prompts", "p0")
    store.set_favorite("u1", "prompts", oldest["id"], True)
    for i in range(1, 7):
        store.add("u1", "prompts", f"p{i}")
    items = store.list("u1", "prompts")
    assert len(items) == 5
    assert _contents(items) == ["p0", "p6", "p5", "p4", "p3"]


def test_delete_and_clear(store):
    a = store.add("u1", "files", "a.csv")
    store.add("u1", "files", "b.csv")
    assert store.delete("u1", "files", a["id"]) is True
    assert store.delete("u1", "files", a["id"]) is False
    assert _contents(store.list("u1", "files")) == ["b.csv"]
    store.clear("u1", "files")
    assert store.list("u1", "files") == []


def test_lists_are_per_user_and_kind(store):
    store.add("u1", "files", "a.csv")
    store.add("u2", "files", "b.csv")
    store.add("u1", "prompts", "sum A")
    assert _contents(store.list("u1", "files")) == ["a.csv"]
    assert _contents(store.list("u2", "files")) == ["b.csv"]
    assert _contents(store.list("u1", "prompts")) == ["sum A"]


def test_unknown_kind_and_empty_content(store):
    with pytest.raises(ValueError):
        store.list("u1", "charts")
    with pytest.raises(ValueError):
        store.add("u1", "prompts", "   ")


def test_unknown_id_returns_none(store):
    assert store.toggle_favorite("u1", "prompts", "missing") is None


def test_json_backend_persists(tmp_path):
    root = tmp_path / "history"
    first = history.HistoryStore(history.JsonFileBackend(root))
    item = first.add("user/../1", "prompts", "sum A")
    first.toggle_favorite("user/../1", "prompts", item["id"])

    second = history.HistoryStore(history.JsonFileBackend(root))
    items = second.list("user/../1", "prompts")
    assert _contents(items) == ["sum A"]
    assert items[0]["isFavorite"] is True
    assert all(p.parent == root for p in root.iterdir())


@pytest.fixture
def client():
    store = history.HistoryStore(history.MemoryBackend())
    api.app.dependency_overrides[api.get_history_store] = lambda: store
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def test_history_api_roundtrip(client):
    headers = {"X-User-Id": "u1"}
    ids = {}
    for text in ("A", "B", "C"):
        res = client.post("/api/history/prompts", json={"content": text}, headers=headers)
        assert res.status_code == 200
        ids[text] = res.json()["id"]

    res = client.post(f"/api/history/prompts/{ids['B']}/favorite", headers=headers)
    assert res.status_code == 200
    assert res.json()["isFavorite"] is True

    listed = client.get("/api/history/prompts", headers=headers).json()
    assert _contents(listed) == ["B", "C", "A"]

    res = client.post(f"/api/history/prompts/{ids['B']}/favorite", json={"favorite": False}, headers=headers)
    assert res.json()["isFavorite"] is False

    assert client.delete(f"/api/history/prompts/{ids['A']}", headers=headers).status_code == 200
    assert client.delete(f"/api/history/prompts/{ids['A']}", headers=headers).status_code == 404
    assert client.delete("/api/history/prompts", headers=headers).json() == {"cleared": True}
    assert client.get("/api/history/prompts", headers=headers).json() == []


def test_history_api_requires_user(client):
    assert client.get("/api/history/files").status_code == 401


def test_history_api_unknown_kind(client):
    res = client.get("/api/history/charts", headers={"X-User-Id": "u1"})
    assert res.status_code == 400
