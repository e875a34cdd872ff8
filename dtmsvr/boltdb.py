"""Storage backend kept in a local bucket database file."""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta
from pathlib import Path

from .bucketdb import Bucket, BucketDB, Tx
from .models import KVStore, TransBranchStore, TransGlobalStore
from .store import NotFoundError, Store, UniqueConflictError

log = logging.getLogger(__name__)

BUCKET_GLOBAL = b"global"
BUCKET_BRANCHES = b"branches"
BUCKET_INDEX = b"index"
BUCKET_KV = b"kv"
ALL_BUCKETS = (BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_INDEX, BUCKET_KV)

_BRANCH_FIELDS = {f.name for f in dataclasses.fields(TransBranchStore)}


def _now() -> datetime:
    return datetime.now().astimezone()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()


def _unix(value: datetime | None) -> int:
    if value is None:
        raise ValueError("next cron time is not set")
    return int(value.timestamp())


def _bucket(tx: Tx, name: bytes) -> Bucket:
    bucket = tx.bucket(name)
    if bucket is None:
        raise KeyError(f"bucket not found: {name.decode()}")
    return bucket


def initialize_buckets(db: BucketDB) -> None:
    """Create every bucket the store uses that does not exist yet."""
    with db.update() as tx:
        for name in ALL_BUCKETS:
            tx.create_bucket_if_not_exists(name)


def cleanup_expired_data(expire: timedelta, db: BucketDB) -> None:
    """Remove transactions finished or rolled back more than ``expire`` ago."""
    if expire <= timedelta(0):
        return
    last_keep = _now() - expire
    with db.update() as tx:
        bucket = tx.bucket(BUCKET_GLOBAL)
        if bucket is None:
            return
        expired: set[str] = set()
        for key, value in bucket.items():
            trans = TransGlobalStore.from_dict(json.loads(value))
            done = trans.finish_time or trans.rollback_time
            if done is not None and last_keep > _aware(done):
                expired.add(key.decode())
        cleanup_global_with_gids(tx, expired)
        cleanup_branch_with_gids(tx, expired)
        cleanup_index_with_gids(tx, expired)


def cleanup_global_with_gids(tx: Tx, gids: Iterable[str] | None) -> None:
    """Delete the global transactions with these gids."""
    bucket = tx.bucket(BUCKET_GLOBAL)
    if bucket is None:
        return
    gids = list(gids or ())
    log.debug("Start to cleanup %d gids", len(gids))
    for gid in gids:
        log.debug("Start to delete gid: %s", gid)
        bucket.delete(gid)


def cleanup_branch_with_gids(tx: Tx, gids: Iterable[str] | None) -> None:
    """Delete the branches that belong to these gids."""
    bucket = tx.bucket(BUCKET_BRANCHES)
    if bucket is None:
        return
    keys: list[bytes] = []
    for gid in gids or ():
        for key, value in bucket.items(gid):
            if TransBranchStore.from_dict(json.loads(value)).gid != gid:
                break
            keys.append(key)
    log.debug("Start to cleanup %d branches", len(keys))
    for key in keys:
        bucket.delete(key)


def cleanup_index_with_gids(tx: Tx, gids: Iterable[str] | None) -> None:
    """Delete the cron index entries that point at these gids."""
    bucket = tx.bucket(BUCKET_INDEX)
    if bucket is None:
        return
    wanted = set(gids or ())
    keys = []
    for key in bucket.keys():
        parts = key.decode().split("-")
        if len(parts) == 2 and parts[1] in wanted:
            keys.append(key)
    log.debug("Start to cleanup %d indexes", len(keys))
    for key in keys:
        bucket.delete(key)


def _get_global(tx: Tx, gid: str) -> TransGlobalStore | None:
    raw = _bucket(tx, BUCKET_GLOBAL).get(gid)
    return None if raw is None else TransGlobalStore.from_dict(json.loads(raw))


def _branch_items(tx: Tx, gid: str) -> Iterator[tuple[bytes, TransBranchStore]]:
    for key, value in _bucket(tx, BUCKET_BRANCHES).items(gid):
        branch = TransBranchStore.from_dict(json.loads(value))
        if branch.gid != gid:
            break
        yield key, branch


def _get_branches(tx: Tx, gid: str) -> list[TransBranchStore]:
    return [branch for _, branch in _branch_items(tx, gid)]


def _put_global(tx: Tx, global_: TransGlobalStore) -> None:
    _bucket(tx, BUCKET_GLOBAL).put(global_.gid, global_.to_json())


def _put_branches(tx: Tx, branches: list[TransBranchStore], start: int) -> None:
    if not branches:
        return
    if start == -1:
        first = branches[0]
        existing = _get_branches(tx, first.gid)
        if any(b.branch_id == first.branch_id and b.op == first.op for b in existing):
            raise UniqueConflictError()
        start = len(existing)
    bucket = _bucket(tx, BUCKET_BRANCHES)
    for offset, branch in enumerate(branches):
        bucket.put(f"{branch.gid}{offset + start:03d}", branch.to_json())


def _index_key(unix: int, gid: str) -> str:
    return f"{unix}-{gid}"


def _put_index(tx: Tx, unix: int, gid: str) -> None:
    _bucket(tx, BUCKET_INDEX).put(_index_key(unix, gid), gid)


def _del_index(tx: Tx, unix: int, gid: str) -> None:
    _bucket(tx, BUCKET_INDEX).delete(_index_key(unix, gid))


def _kv_key(cat: str, key: str) -> str:
    return f"{cat}-{key}"


def _get_kv(tx: Tx, cat: str, key: str) -> KVStore | None:
    raw = _bucket(tx, BUCKET_KV).get(_kv_key(cat, key))
    return None if raw is None else KVStore.from_dict(json.loads(raw))


def _put_kv(tx: Tx, kv: KVStore) -> None:
    _bucket(tx, BUCKET_KV).put(_kv_key(kv.cat, kv.k), kv.to_json())


class BoltStore(Store):
    """A Store kept in a local bucket database file."""

    def __init__(self, data_expire: int, retry_interval: int, path: str | Path = "./dtm.bolt") -> None:
        self.data_expire = data_expire
        self.retry_interval = retry_interval
        self._db = BucketDB(path, timeout=1.0)
        try:
            initialize_buckets(self._db)
            cleanup_expired_data(timedelta(seconds=data_expire), self._db)
        except BaseException:
            self._db.close()
            raise

    def close(self) -> None:
        """Close the database file."""
        self._db.close()

    def ping(self) -> None:
        return None

    def populate_data(self, skip_drop: bool) -> None:
        if skip_drop:
            return
        with self._db.update() as tx:
            for name in (BUCKET_INDEX, BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_KV):
                tx.delete_bucket(name)
            for name in (BUCKET_INDEX, BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_KV):
                tx.create_bucket(name)
        log.info("Reset all data for boltdb")

    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None:
        with self._db.view() as tx:
            return _get_global(tx, gid)

    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        globals_: list[TransGlobalStore] = []
        with self._db.view() as tx:
            for key, value in _bucket(tx, BUCKET_GLOBAL).items(position):
                if key.decode() == position:
                    continue
                globals_.append(TransGlobalStore.from_dict(json.loads(value)))
                if len(globals_) == limit:
                    break
        next_position = "" if len(globals_) < limit else globals_[-1].gid
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        with self._db.view() as tx:
            return _get_branches(tx, gid)

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        unknown = [name for name in updates if name not in _BRANCH_FIELDS]
        if unknown:
            raise ValueError(f"unknown branch fields: {', '.join(unknown)}")
        affected = 0
        with self._db.update() as tx:
            bucket = _bucket(tx, BUCKET_BRANCHES)
            for branch in branches:
                match = next(
                    (
                        (key, stored)
                        for key, stored in _branch_items(tx, branch.gid)
                        if stored.branch_id == branch.branch_id and stored.op == branch.op
                    ),
                    None,
                )
                if match is None:
                    _put_branches(tx, [branch], -1)
                else:
                    key, stored = match
                    for name in updates:
                        setattr(stored, name, getattr(branch, name))
                    bucket.put(key, stored.to_json())
                affected += 1
        return affected

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        with self._db.update() as tx:
            stored = _get_global(tx, gid)
            if stored is None or stored.status != status:
                raise NotFoundError()
            _put_branches(tx, branches, branch_start)

    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        with self._db.update() as tx:
            if _get_global(tx, global_.gid) is not None:
                raise UniqueConflictError()
            _put_global(tx, global_)
            _put_index(tx, _unix(global_.next_cron_time), global_.gid)
            _put_branches(tx, branches, 0)

    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        old = global_.status
        global_.status = new_status
        with self._db.update() as tx:
            stored = _get_global(tx, global_.gid)
            if stored is None or stored.status != old:
                raise NotFoundError()
            if finished:
                _del_index(tx, _unix(stored.next_cron_time), stored.gid)
            _put_global(tx, global_)

    def touch_cron_time(
        self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        old_unix = _unix(global_.next_cron_time)
        global_.update_time = _now()
        global_.next_cron_time = next_cron_time
        global_.next_cron_interval = next_cron_interval
        with self._db.update() as tx:
            stored = _get_global(tx, global_.gid)
            if stored is None or stored.gid != global_.gid:
                raise NotFoundError()
            _del_index(tx, old_unix, global_.gid)
            _put_global(tx, global_)
            _put_index(tx, _unix(global_.next_cron_time), global_.gid)

    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None:
        trans: TransGlobalStore | None = None
        limit = str(_unix(_now() + expire_in))
        with self._db.update() as tx:
            index = _bucket(tx, BUCKET_INDEX)
            to_delete: list[bytes] = []
            for key, value in index.items():
                if not (key.decode() <= limit and (trans is None or trans.is_finished())):
                    break
                trans = _get_global(tx, value.decode())
                to_delete.append(key)
            for key in to_delete:
                index.delete(key)
            if trans is not None and not trans.is_finished():
                next_time = _now() + timedelta(seconds=self.retry_interval)
                trans.next_cron_time = next_time
                _put_global(tx, trans)
                # must follow the deletes: the key may be the same
                _put_index(tx, _unix(next_time), trans.gid)
        return trans

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        next_time = _now()
        start = str(_unix(_now() + after))
        succeed_count = 0
        has_remaining = False
        with self._db.update() as tx:
            index = _bucket(tx, BUCKET_INDEX)
            for key, value in index.items(start):
                if succeed_count == limit:
                    has_remaining = True
                    break
                index.delete(key)
                trans = _get_global(tx, value.decode())
                if trans is None:
                    continue
                trans.next_cron_time = next_time
                _put_global(tx, trans)
                _put_index(tx, _unix(next_time), trans.gid)
                succeed_count += 1
        return succeed_count, has_remaining

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        kvs: list[KVStore] = []
        with self._db.view() as tx:
            for key, value in _bucket(tx, BUCKET_KV).items(position):
                text = key.decode()
                if text == position or not text.startswith(cat):
                    continue
                kvs.append(KVStore.from_dict(json.loads(value)))
                if len(kvs) == limit:
                    break
        next_position = "" if len(kvs) < limit else _kv_key(cat, kvs[-1].k)
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        with self._db.view() as tx:
            if cat and key:
                kv = _get_kv(tx, cat, key)
                return [] if kv is None else [kv]
            return [
                KVStore.from_dict(json.loads(value))
                for k, value in _bucket(tx, BUCKET_KV).items()
                if k.decode().startswith(cat)
            ]

    def update_kv(self, kv: KVStore) -> None:
        kv.update_time = _now()
        old_version = kv.version
        kv.version = old_version + 1
        with self._db.update() as tx:
            stored = _get_kv(tx, kv.cat, kv.k)
            if stored is None or stored.version != old_version:
                raise NotFoundError()
            _put_kv(tx, kv)

    def delete_kv(self, cat: str, key: str) -> None:
        with self._db.update() as tx:
            if _get_kv(tx, cat, key) is None:
                raise NotFoundError()
            _bucket(tx, BUCKET_KV).delete(_kv_key(cat, key))

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = _now()
        kv = KVStore(create_time=now, update_time=now, cat=cat, k=key, v=value, version=1)
        with self._db.update() as tx:
            if _get_kv(tx, cat, key) is not None:
                raise UniqueConflictError()
            _put_kv(tx, kv)