import threading

from bigfile.services.merge_lock import KeyedLocks, MergeLock
from bigfile.services.session_state import marker_key

FP = "c" * 32


def test_keyed_locks_are_dropped_after_use():
    locks = KeyedLocks()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_keyed_locks_exclude_same_key():
    locks = KeyedLocks()
    inside = []
    overlap = []

    def worker():
        with locks.hold("k"):
            inside.append(1)
            overlap.append(len(inside))
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlap == [1] * 8


def test_claim_is_exclusive_until_released(storage):
    storage.create_bucket("temp")
    a = MergeLock(storage, "temp")
    b = MergeLock(storage, "temp")

    assert a.try_claim(FP)
    assert not b.try_claim(FP)

    a.release(FP)
    assert b.try_claim(FP)


def test_stale_claim_is_broken(storage):
    storage.create_bucket("temp")
    old = MergeLock(storage, "temp", claim_ttl_seconds=60, clock=lambda: 1000.0)
    new = MergeLock(storage, "temp", claim_ttl_seconds=60, clock=lambda: 1100.0)

    assert old.try_claim(FP)
    assert new.try_claim(FP)
    assert new.owner in storage.read_bytes("temp", marker_key(FP, ".merging")).decode()


def test_fresh_claim_is_respected(storage):
    storage.create_bucket("temp")
    old = MergeLock(storage, "temp", claim_ttl_seconds=60, clock=lambda: 1000.0)
    new = MergeLock(storage, "temp", claim_ttl_seconds=60, clock=lambda: 1030.0)

    assert old.try_claim(FP)
    assert not new.try_claim(FP)


def test_unreadable_claim_counts_as_stale(storage):
    storage.create_bucket("temp")
    storage.put("temp", marker_key(FP, ".merging"), b"garbage")

    assert MergeLock(storage, "temp").try_claim(FP)
