"""Storage backend kept in a Redis server, using Lua scripts for atomic updates."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .config import Config
from .models import KVStore, TransBranchStore, TransGlobalStore
from .store import NotFoundError, Store, UniqueConflictError

log = logging.getLogger(__name__)

_RESULT_ERRORS = {
    "NOT_FOUND": NotFoundError,
    "UNIQUE_CONFLICT": UniqueConflictError,
}

_LUA_MAY_SAVE_NEW_TRANS = """-- MaySaveNewTrans
local g = redis.call('GET', KEYS[1])
if g ~= false then
	return 'UNIQUE_CONFLICT'
end

redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[2])
redis.call('SET', KEYS[4], ARGV[6], 'EX', ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[5])
for k = 7, table.getn(ARGV) do
	redis.call('RPUSH', KEYS[2], ARGV[k])
end
redis.call('EXPIRE', KEYS[2], ARGV[2])
"""

_LUA_LOCK_GLOBAL_SAVE_BRANCHES = """-- LockGlobalSaveBranches
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[3] then
	return 'NOT_FOUND'
end
local start = ARGV[4]
-- check duplicates for workflow
if start == "-1" then
	local t = cjson.decode(ARGV[5])
	local bs = redis.call('LRANGE', KEYS[2], 0, -1)
	for i = 1, table.getn(bs) do
		local c = cjson.decode(bs[i])
		if t['branch_id'] == c['branch_id'] and t['op'] == c['op'] then
			return 'UNIQUE_CONFLICT'
		end
	end
end
for k = 5, table.getn(ARGV) do
	if start == "-1" then
		redis.call('RPUSH', KEYS[2], ARGV[k])
	else
		redis.call('LSET', KEYS[2], start+k-5, ARGV[k])
	end
end
redis.call('EXPIRE', KEYS[2], ARGV[2])
"""

_LUA_CHANGE_GLOBAL_STATUS = """-- ChangeGlobalStatus
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[4] then
  return 'NOT_FOUND'
end
redis.call('SET', KEYS[1],  ARGV[3], 'EX', ARGV[2])
redis.call('SET', KEYS[4],  ARGV[7], 'EX', ARGV[2])
if ARGV[5] == '1' then
	redis.call('ZREM', KEYS[3], ARGV[6])
	redis.call('EXPIRE', KEYS[1], ARGV[8])
	redis.call('EXPIRE', KEYS[2], ARGV[8])
	redis.call('EXPIRE', KEYS[4], ARGV[8])
end
"""

_LUA_LOCK_ONE_GLOBAL_TRANS = """-- LockOneGlobalTrans
local r = redis.call('ZRANGE', KEYS[3], 0, 0, 'WITHSCORES')
local gid = r[1]
if gid == nil then
	return 'NOT_FOUND'
end

if tonumber(r[2]) > tonumber(ARGV[3]) then
	return 'NOT_FOUND'
end
redis.call('ZADD', KEYS[3], ARGV[4], gid)
return gid
"""

_LUA_RESET_CRON_TIME = """-- ResetCronTime
local r = redis.call('ZRANGEBYSCORE', KEYS[3], ARGV[3], '+inf', 'LIMIT', 0, ARGV[5]+1)
local i = 0
for score,gid in pairs(r) do
	if i == tonumber(ARGV[5]) then
		i = i + 1
		break
	end
	redis.call('ZADD', KEYS[3], ARGV[4], gid)
	i = i + 1
end
return tostring(i)
"""

_LUA_TOUCH_CRON_TIME = """-- TouchCronTime
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[5] then
	return 'NOT_FOUND'
end
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[6])
redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[2])
"""

_LUA_UPDATE_KV = """-- UpdateKV
local oldJson = redis.call('GET', KEYS[1])
if oldJson == false then
	return 'NOT_FOUND'
end
local old = cjson.decode(oldJson)
if tostring(old.version) == ARGV[1] then
	redis.call('SET', KEYS[1], ARGV[2])
else
	return 'NOT_FOUND'
end
"""

_LUA_CREATE_KV = """-- CreateKV
local key = redis.call('GET', KEYS[1])
if key ~= false then
	return 'UNIQUE_CONFLICT'
end
redis.call('SET', KEYS[1], ARGV[1])
"""


def _now() -> datetime:
    return datetime.now().astimezone()


def _unix(value: datetime | None) -> int:
    if value is None:
        raise ValueError("next cron time is not set")
    return int(value.timestamp())


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def _marshal(value: Any) -> str:
    to_json = getattr(value, "to_json", None)
    if callable(to_json):
        return to_json()
    return json.dumps(value, separators=(",", ":"))


@dataclass
class ArgList:
    """Keys and arguments handed to a Lua script."""

    prefix: str = ""
    keys: list[str] = field(default_factory=list)
    args: list[Any] = field(default_factory=list)

    def append_gid(self, gid: str) -> ArgList:
        """Add the global, branches, index and status keys of a transaction."""
        self.keys.extend(
            [
                f"{self.prefix}_g_{gid}",
                f"{self.prefix}_b_{gid}",
                f"{self.prefix}_u",
                f"{self.prefix}_s_{gid}",
            ]
        )
        return self

    def append_raw(self, value: Any) -> ArgList:
        """Add a value as it is; booleans become 1 or 0."""
        if isinstance(value, bool):
            value = 1 if value else 0
        self.args.append(value)
        return self

    def append_object(self, value: Any) -> ArgList:
        """Add the JSON form of a value."""
        return self.append_raw(_marshal(value))

    def append_branches(self, branches: list[TransBranchStore]) -> ArgList:
        """Add the JSON form of every branch."""
        for branch in branches:
            self.append_raw(branch.to_json())
        return self


def handle_redis_result(ret: Any) -> str:
    """Turn a script result into text, raising the storage error it names."""
    log.debug("result is: %r", ret)
    text = _text(ret) if isinstance(ret, (str, bytes, bytearray)) else ""
    error = _RESULT_ERRORS.get(text)
    if error is not None:
        raise error()
    return text


class RedisStore(Store):
    """A Store kept in Redis."""

    def __init__(self, conf: Config | None = None, client: Any = None) -> None:
        self.conf = conf if conf is not None else Config()
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self) -> Any:
        """The Redis client, connected on first use."""
        with self._lock:
            if self._client is None:
                import redis

                store = self.conf.store
                log.debug("connecting to redis: %s:%s", store.host, store.port)
                self._client = redis.Redis(
                    host=store.host,
                    port=store.port,
                    username=store.user or None,
                    password=store.password or None,
                    decode_responses=True,
                )
            return self._client

    @property
    def _prefix(self) -> str:
        return self.conf.store.redis_prefix

    def _new_args(self) -> ArgList:
        args = ArgList(prefix=self._prefix)
        return args.append_raw(self._prefix).append_object(self.conf.store.data_expire)

    def _call_lua(self, args: ArgList, script: str) -> str:
        log.debug("calling lua. args: %s", args)
        ret = self.client.eval(script, len(args.keys), *args.keys, *args.args)
        return handle_redis_result(ret)

    def ping(self) -> None:
        self.client.ping()

    def populate_data(self, skip_drop: bool) -> None:
        if not skip_drop:
            self.client.flushall()
            log.info("call redis flushall")

    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None:
        raw = self.client.get(f"{self._prefix}_g_{gid}")
        if raw is None:
            return None
        return TransGlobalStore.from_dict(json.loads(_text(raw)))

    def _scan_page(self, position: str, pattern: str, limit: int) -> tuple[list[str], str]:
        cursor = int(position) if position else 0
        next_cursor, keys = self.client.scan(cursor=cursor, match=pattern, count=limit)
        next_cursor = int(next_cursor)
        return [_text(k) for k in keys], (str(next_cursor) if next_cursor > 0 else "")

    def _values(self, keys: list[str]) -> list[str]:
        if not keys:
            return []
        return [_text(v) for v in self.client.mget(keys) if v is not None]

    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        keys, next_position = self._scan_page(position, f"{self._prefix}_g_*", limit)
        globals_ = [TransGlobalStore.from_dict(json.loads(v)) for v in self._values(keys)]
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        values = self.client.lrange(f"{self._prefix}_b_{gid}", 0, -1)
        return [TransBranchStore.from_dict(json.loads(_text(v))) for v in values]

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        return 0

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        args = (
            self._new_args()
            .append_gid(gid)
            .append_raw(status)
            .append_raw(branch_start)
            .append_branches(branches)
        )
        self._call_lua(args, _LUA_LOCK_GLOBAL_SAVE_BRANCHES)

    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        args = (
            self._new_args()
            .append_gid(global_.gid)
            .append_object(global_)
            .append_raw(_unix(global_.next_cron_time))
            .append_raw(global_.gid)
            .append_raw(global_.status)
            .append_branches(branches)
        )
        global_.steps = []
        global_.payloads = []
        self._call_lua(args, _LUA_MAY_SAVE_NEW_TRANS)

    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        old = global_.status
        global_.status = new_status
        args = (
            self._new_args()
            .append_gid(global_.gid)
            .append_object(global_)
            .append_raw(old)
            .append_raw(finished)
            .append_raw(global_.gid)
            .append_raw(new_status)
            .append_object(self.conf.store.finished_data_expire)
        )
        self._call_lua(args, _LUA_CHANGE_GLOBAL_STATUS)

    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None:
        expired = _unix(_now() + expire_in)
        next_time = _unix(_now() + timedelta(seconds=self.conf.retry_interval))
        args = self._new_args().append_gid("").append_raw(expired).append_raw(next_time)
        while True:
            try:
                gid = self._call_lua(args, _LUA_LOCK_ONE_GLOBAL_TRANS)
            except NotFoundError:
                return None
            global_ = self.find_trans_global_store(gid)
            if global_ is not None:
                return global_

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        next_time = _unix(_now())
        timeout = _unix(_now() + after)
        args = self._new_args().append_gid("").append_raw(timeout).append_raw(next_time).append_raw(limit)
        count = int(self._call_lua(args, _LUA_RESET_CRON_TIME))
        if count > limit:
            return limit, True
        return count, False

    def touch_cron_time(
        self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        global_.update_time = _now()
        global_.next_cron_time = next_cron_time
        global_.next_cron_interval = next_cron_interval
        args = (
            self._new_args()
            .append_gid(global_.gid)
            .append_object(global_)
            .append_raw(_unix(global_.next_cron_time))
            .append_raw(global_.status)
            .append_raw(global_.gid)
        )
        self._call_lua(args, _LUA_TOUCH_CRON_TIME)

    def _kv_key(self, cat: str, key: str) -> str:
        return f"{self._prefix}_kv_{cat}_{key}"

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        keys, next_position = self._scan_page(position, f"{self._prefix}_kv_{cat}_*", limit)
        kvs = [KVStore.from_dict(json.loads(v)) for v in self._values(keys)]
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        pattern = f"{self._prefix}_kv_"
        if cat:
            pattern += f"{cat}_"
        if key:
            keys = [pattern + key]
        else:
            keys = [_text(k) for k in self.client.scan_iter(match=pattern + "*")]
        return [KVStore.from_dict(json.loads(v)) for v in self._values(keys)]

    def update_kv(self, kv: KVStore) -> None:
        kv.update_time = _now()
        old_version = kv.version
        kv.version = old_version + 1
        args = ArgList(prefix=self._prefix, keys=[self._kv_key(kv.cat, kv.k)])
        args.append_raw(str(old_version)).append_object(kv)
        self._call_lua(args, _LUA_UPDATE_KV)

    def delete_kv(self, cat: str, key: str) -> None:
        if self.client.delete(self._kv_key(cat, key)) == 0:
            raise NotFoundError()

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = _now()
        kv = KVStore(create_time=now, update_time=now, cat=cat, k=key, v=value, version=1)
        args = ArgList(prefix=self._prefix, keys=[self._kv_key(cat, key)])
        args.append_object(kv)
        self._call_lua(args, _LUA_CREATE_KV)