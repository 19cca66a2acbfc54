import threading

import pytest

from dotci.store import KeyExistsError, KeyNotFoundError, MemStore, StoreError


def test_set_then_get():
    s = MemStore()
    s.set("a", "/app")
    assert s.get("a") == "/app"
    assert "a" in s
    assert len(s) == 1


def test_set_existing_key_keeps_value():
    s = MemStore()
    s.set("a", "first")
    with pytest.raises(KeyExistsError) as exc:
        s.set("a", "second")
    assert s.get("a") == "first"
    assert str(exc.value) == "store: key already exists: a"


@pytest.mark.parametrize("op", ["get", "update", "delete"])
def test_absent_key(op):
    s = MemStore()
    args = ("missing", "v") if op == "update" else ("missing",)
    with pytest.raises(KeyNotFoundError):
        getattr(s, op)(*args)


def test_update_and_delete():
    s = MemStore()
    s.set("k", 1)
    s.update("k", 2)
    assert s.get("k") == 2
    s.delete("k")
    assert "k" not in s
    assert s.keys() == []


def test_store_errors_are_key_errors():
    assert issubclass(KeyExistsError, StoreError)
    assert issubclass(KeyNotFoundError, KeyError)


def test_concurrent_set_has_one_winner():
    s = MemStore()
    wins = []
    errors = []

    def attempt(i):
        try:
            s.set("shared", i)
            wins.append(i)
        except KeyExistsError:
            errors.append(i)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(errors) == 15
    assert s.get("shared") == wins[0]
