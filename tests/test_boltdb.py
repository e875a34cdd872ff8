from datetime import datetime, timedelta

import pytest

from dtmsvr.boltdb import (
    ALL_BUCKETS,
    BUCKET_BRANCHES,
    BUCKET_GLOBAL,
    BUCKET_INDEX,
    BoltStore,
    cleanup_branch_with_gids,
    cleanup_expired_data,
    cleanup_global_with_gids,
    cleanup_index_with_gids,
    initialize_buckets,
)
from dtmsvr.bucketdb import BucketDB
from dtmsvr.models import TransBranchStore, TransGlobalStore
from dtmsvr.store import NotFoundError, UniqueConflictError


def now():
    return datetime.now().astimezone()


@pytest.fixture
def db(tmp_path):
    database = BucketDB(tmp_path / "test.bolt")
    yield database
    database.close()


@pytest.fixture
def store(tmp_path):
    s = BoltStore(604800, 10, path=tmp_path / "dtm.bolt")
    yield s
    s.close()


def keys_of(db, name):
    with db.view() as tx:
        return [k.decode() for k in tx.bucket(name).keys()]


def test_initialize_buckets(db):
    initialize_buckets(db)
    with db.view() as tx:
        assert tx.bucket_names() == list(ALL_BUCKETS)


def test_cleanup_expired_negative(db):
    cleanup_expired_data(timedelta(seconds=-1), db)
    with db.view() as tx:
        assert tx.bucket_names() == []


def test_cleanup_expired_nil_global_bucket(db):
    cleanup_expired_data(timedelta(seconds=1), db)
    with db.view() as tx:
        assert tx.bucket(BUCKET_GLOBAL) is None


def test_cleanup_expired_normal(db):
    initialize_buckets(db)
    done = now() - timedelta(minutes=10)
    datas = {
        "gid0": TransGlobalStore(),
        "gid1": TransGlobalStore(finish_time=done),
        "gid2": TransGlobalStore(rollback_time=done),
    }
    with db.update() as tx:
        bucket = tx.bucket(BUCKET_GLOBAL)
        for gid, data in datas.items():
            bucket.put(gid, data.to_json())
    cleanup_expired_data(timedelta(minutes=1), db)
    assert keys_of(db, BUCKET_GLOBAL) == ["gid0"]


def test_cleanup_global_nil_bucket(db):
    with db.update() as tx:
        cleanup_global_with_gids(tx, None)
        assert tx.bucket_names() == []


def test_cleanup_global_normal(db):
    with db.update() as tx:
        bucket = tx.create_bucket_if_not_exists(BUCKET_GLOBAL)
        for key, data in [("k1", "data1"), ("k2", "data2"), ("k3", "data3")]:
            bucket.put(key, data)
    with db.update() as tx:
        cleanup_global_with_gids(tx, {"k1", "k2"})
    assert keys_of(db, BUCKET_GLOBAL) == ["k3"]


def test_cleanup_branch_nil_bucket(db):
    with db.update() as tx:
        cleanup_branch_with_gids(tx, None)
        assert tx.bucket_names() == []


def test_cleanup_branch_normal(db):
    entries = [("a", "a"), ("gid001", "gid0"), ("gid002", "gid0"), ("gid101", "gid1"), ("gid201", "gid2"), ("z", "z")]
    with db.update() as tx:
        bucket = tx.create_bucket_if_not_exists(BUCKET_BRANCHES)
        for key, gid in entries:
            bucket.put(key, TransBranchStore(gid=gid).to_json())
    with db.update() as tx:
        cleanup_branch_with_gids(tx, {"gid0", "gid1"})
    assert keys_of(db, BUCKET_BRANCHES) == ["a", "gid201", "z"]


def test_cleanup_index_nil_bucket(db):
    with db.update() as tx:
        cleanup_index_with_gids(tx, None)
        assert tx.bucket_names() == []


def test_cleanup_index_normal(db):
    entries = [("a", "a"), ("0-gid0", "gid0"), ("1-gid0", "gid0"), ("2-gid1", "gid1"), ("3-gid2", "gid2"), ("z", "z")]
    with db.update() as tx:
        bucket = tx.create_bucket_if_not_exists(BUCKET_INDEX)
        for key, gid in entries:
            bucket.put(key, TransBranchStore(gid=gid).to_json())
    with db.update() as tx:
        cleanup_index_with_gids(tx, {"gid0", "gid1"})
    assert keys_of(db, BUCKET_INDEX) == ["3-gid2", "a", "z"]


def new_trans(gid, delay=0, status="prepared"):
    return TransGlobalStore(gid=gid, status=status, trans_type="saga", next_cron_time=now() + timedelta(seconds=delay))


def test_save_and_find(store):
    trans = new_trans("g1")
    branches = [TransBranchStore(gid="g1", branch_id="01", op="action", status="prepared", bin_data=b"x")]
    store.may_save_new_trans(trans, branches)
    found = store.find_trans_global_store("g1")
    assert found.gid == "g1"
    assert found.next_cron_time == trans.next_cron_time
    assert store.find_branches("g1") == branches
    assert store.find_trans_global_store("nope") is None
    with pytest.raises(UniqueConflictError):
        store.may_save_new_trans(new_trans("g1"), [])


def test_lock_global_save_branches(store):
    store.may_save_new_trans(new_trans("g1"), [TransBranchStore(gid="g1", branch_id="01", op="action")])
    store.lock_global_save_branches("g1", "prepared", [TransBranchStore(gid="g1", branch_id="02", op="action")], -1)
    assert [b.branch_id for b in store.find_branches("g1")] == ["01", "02"]
    with pytest.raises(UniqueConflictError):
        store.lock_global_save_branches("g1", "prepared", [TransBranchStore(gid="g1", branch_id="01", op="action")], -1)
    with pytest.raises(NotFoundError):
        store.lock_global_save_branches("g1", "submitted", [TransBranchStore(gid="g1", branch_id="03")], -1)
    with pytest.raises(NotFoundError):
        store.lock_global_save_branches("missing", "prepared", [TransBranchStore(gid="missing")], -1)


def test_update_branches(store):
    store.may_save_new_trans(new_trans("g1"), [TransBranchStore(gid="g1", branch_id="01", op="action", status="prepared")])
    changed = TransBranchStore(gid="g1", branch_id="01", op="action", status="succeed", url="ignored")
    assert store.update_branches([changed], ["status"]) == 1
    [branch] = store.find_branches("g1")
    assert branch.status == "succeed"
    assert branch.url == ""
    with pytest.raises(ValueError):
        store.update_branches([changed], ["no_such_field"])


def test_change_global_status(store):
    trans = new_trans("g1", delay=-10)
    store.may_save_new_trans(trans, [])
    store.change_global_status(trans, "succeed", ["status"], True)
    assert store.find_trans_global_store("g1").status == "succeed"
    assert store.lock_one_global_trans(timedelta(0)) is None
    stale = new_trans("g1", status="prepared")
    with pytest.raises(NotFoundError):
        store.change_global_status(stale, "failed", ["status"], False)


def test_lock_one_global_trans(store):
    store.may_save_new_trans(new_trans("due", delay=-10), [])
    store.may_save_new_trans(new_trans("later", delay=1000), [])
    locked = store.lock_one_global_trans(timedelta(0))
    assert locked.gid == "due"
    assert locked.next_cron_time > now()
    assert store.lock_one_global_trans(timedelta(0)) is None
    again = store.lock_one_global_trans(timedelta(seconds=2000))
    assert again is not None


def test_touch_cron_time(store):
    trans = new_trans("g1", delay=1000)
    store.may_save_new_trans(trans, [])
    assert store.lock_one_global_trans(timedelta(0)) is None
    store.touch_cron_time(trans, 5, now() - timedelta(seconds=5))
    assert store.find_trans_global_store("g1").next_cron_interval == 5
    assert store.lock_one_global_trans(timedelta(0)).gid == "g1"


def test_reset_cron_time(store):
    store.may_save_new_trans(new_trans("g1", delay=1000), [])
    store.may_save_new_trans(new_trans("g2", delay=1000), [])
    assert store.reset_cron_time(timedelta(seconds=50), 1) == (1, True)
    assert store.reset_cron_time(timedelta(seconds=50), 5) == (1, False)
    gids = {store.lock_one_global_trans(timedelta(0)).gid, store.lock_one_global_trans(timedelta(0)).gid}
    assert gids == {"g1", "g2"}


def test_scan_trans_global_stores(store):
    for gid in ["g1", "g2", "g3"]:
        store.may_save_new_trans(new_trans(gid), [])
    page, position = store.scan_trans_global_stores("", 2)
    assert [g.gid for g in page] == ["g1", "g2"]
    assert position == "g2"
    page, position = store.scan_trans_global_stores(position, 2)
    assert [g.gid for g in page] == ["g3"]
    assert position == ""


def test_kv_lifecycle(store):
    store.create_kv("topics", "t1", "[]")
    with pytest.raises(UniqueConflictError):
        store.create_kv("topics", "t1", "[]")
    [kv] = store.find_kv("topics", "t1")
    assert (kv.v, kv.version) == ("[]", 1)
    kv.v = "[1]"
    store.update_kv(kv)
    assert store.find_kv("topics", "t1")[0].version == 2
    stale = store.find_kv("topics", "t1")[0]
    stale.version = 1
    with pytest.raises(NotFoundError):
        store.update_kv(stale)
    store.delete_kv("topics", "t1")
    assert store.find_kv("topics", "t1") == []
    with pytest.raises(NotFoundError):
        store.delete_kv("topics", "t1")


def test_scan_and_find_kv_by_category(store):
    store.create_kv("topics", "a", "1")
    store.create_kv("topics", "b", "2")
    store.create_kv("other", "c", "3")
    assert sorted(kv.k for kv in store.find_kv("topics", "")) == ["a", "b"]
    assert len(store.find_kv("", "")) == 3
    page, position = store.scan_kv("topics", "", 1)
    assert [kv.k for kv in page] == ["a"]
    assert position == "topics-a"
    page, position = store.scan_kv("topics", position, 5)
    assert [kv.k for kv in page] == ["b"]
    assert position == ""


def test_populate_data_resets(store):
    store.create_kv("topics", "a", "1")
    store.may_save_new_trans(new_trans("g1"), [])
    store.populate_data(True)
    assert store.find_trans_global_store("g1") is not None
    store.populate_data(False)
    assert store.find_trans_global_store("g1") is None
    assert store.find_kv("", "") == []


def test_expired_data_removed_on_open(tmp_path):
    path = tmp_path / "dtm.bolt"
    first = BoltStore(60, 10, path=path)
    old = new_trans("old")
    old.finish_time = now() - timedelta(hours=1)
    first.may_save_new_trans(old, [TransBranchStore(gid="old", branch_id="01")])
    first.may_save_new_trans(new_trans("fresh"), [])
    first.close()
    second = BoltStore(60, 10, path=path)
    try:
        assert second.find_trans_global_store("old") is None
        assert second.find_branches("old") == []
        assert second.find_trans_global_store("fresh").gid == "fresh"
    finally:
        second.close()