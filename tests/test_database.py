import threading

from database import SECONDS_PER_DAY, CatalogStore, ModelRecord
from helpers import records


def test_cache_roundtrip_before_expiry(store, clock):
    expires_at = store.set_cache("models_updated", {"timestamp": 1}, ttl_days=7)
    assert expires_at == clock.now + 7 * SECONDS_PER_DAY
    clock.now += 7 * SECONDS_PER_DAY - 1
    assert store.get_cache("models_updated") == {"timestamp": 1}


def test_cache_entry_absent_at_and_after_expiry(store, clock):
    store.set_cache("models_updated", {"timestamp": 1}, ttl_days=1)
    clock.now += SECONDS_PER_DAY
    assert store.get_cache("models_updated") is None
    clock.now += 1000
    assert store.get_cache("models_updated") is None


def test_cache_missing_key(store):
    assert store.get_cache("nope") is None


def test_set_cache_overwrites(store):
    store.set_cache("k", "old", ttl_days=1)
    store.set_cache("k", "new", ttl_days=1)
    assert store.get_cache("k") == "new"


def test_replace_models_swaps_whole_table(store, clock):
    store.replace_models(records(("gpt-4", "chatgpt"), ("deepseek-r1", "deepseek")))
    clock.now += 60
    store.replace_models(records(("qwen-max", "qwen")))

    models = store.get_models()
    assert [m.id for m in models] == ["qwen-max"]
    assert models[0].created_at == int(clock.now)
    assert models[0].updated_at == int(clock.now)
    assert store.find_group("gpt-4") is None
    assert store.find_group("qwen-max") == "qwen"


def test_find_group(store):
    store.replace_models([ModelRecord("gpt-4o", "chatgpt")])
    assert store.find_group("gpt-4o") == "chatgpt"
    assert store.find_group("missing") is None


def test_file_backed_store_persists(tmp_path):
    path = tmp_path / "nested" / "data.db"
    first = CatalogStore(path)
    first.open()
    first.replace_models(records(("gpt-4", "chatgpt")))
    first.close()

    second = CatalogStore(path)
    assert second.find_group("gpt-4") == "chatgpt"
    second.close()


def test_concurrent_readers_never_see_a_mixed_catalog():
    store = CatalogStore(":memory:")
    store.open()
    old = records(*[(f"old-{i}", "chatgpt") for i in range(50)])
    new = records(*[(f"new-{i}", "deepseek") for i in range(30)])
    old_ids = {r.id for r in old}
    new_ids = {r.id for r in new}
    store.replace_models(old)

    stop = threading.Event()
    seen = []

    def reader():
        while not stop.is_set():
            seen.append({m.id for m in store.get_models()})

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for i in range(40):
        store.replace_models(new if i % 2 == 0 else old)
    stop.set()
    for t in threads:
        t.join()
    store.close()

    assert seen
    for snapshot in seen:
        assert snapshot in (old_ids, new_ids)
