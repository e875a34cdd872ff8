import json
from datetime import datetime, timedelta, timezone

import pytest

from dtmsvr.models import (
    KVStore,
    TransBranchStore,
    TransGlobalExt,
    TransGlobalStore,
    TransOptions,
)


@pytest.mark.parametrize(
    "status, finished",
    [("failed", True), ("succeed", True), ("prepared", False), ("submitted", False), ("aborting", False), ("", False)],
)
def test_is_finished(status, finished):
    assert TransGlobalStore(status=status).is_finished() is finished


def test_global_omits_empty_fields():
    assert TransGlobalStore(gid="g1").to_dict() == {"gid": "g1"}


def test_global_round_trip():
    now = datetime(2022, 5, 6, 7, 8, 9, 123456, tzinfo=timezone(timedelta(hours=8)))
    original = TransGlobalStore(
        id=7,
        create_time=now,
        update_time=now,
        gid="g1",
        trans_type="saga",
        steps=[{"action": "http://localhost/a", "compensate": "http://localhost/b"}],
        payloads=["{}"],
        status="submitted",
        protocol="http",
        next_cron_interval=10,
        next_cron_time=now,
        owner="o1",
        ext_data='{"headers":{"h":"v"}}',
        trans_options=TransOptions(wait_result=True, retry_limit=3, branch_headers={"h": "v"}),
    )
    restored = TransGlobalStore.from_dict(json.loads(original.to_json()))
    assert restored == original


def test_global_binary_payloads_and_ext_not_serialized():
    trans = TransGlobalStore(gid="g", bin_payloads=[b"xyz"], ext=TransGlobalExt(headers={"a": "b"}))
    data = trans.to_dict()
    assert data == {"gid": "g"}
    assert TransGlobalStore.from_dict(data).bin_payloads == []


def test_trans_options_flattened():
    trans = TransGlobalStore(gid="g", trans_options=TransOptions(retry_limit=3, timeout_to_fail=60))
    data = trans.to_dict()
    assert data["retry_limit"] == 3
    assert data["timeout_to_fail"] == 60
    assert TransGlobalStore.from_dict(data).trans_options == TransOptions(retry_limit=3, timeout_to_fail=60)


def test_to_json_is_compact():
    text = TransGlobalStore(gid="g", status="prepared").to_json()
    assert " " not in text
    assert json.loads(text) == {"gid": "g", "status": "prepared"}


def test_parse_utc_suffix():
    trans = TransGlobalStore.from_dict({"finish_time": "2022-01-02T03:04:05Z"})
    assert trans.finish_time == datetime(2022, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_parse_nanosecond_fraction():
    trans = TransGlobalStore.from_dict({"next_cron_time": "2022-01-02T03:04:05.123456789+08:00"})
    assert trans.next_cron_time.microsecond == 123456
    assert trans.next_cron_time.utcoffset() == timedelta(hours=8)


def test_parse_invalid_time():
    with pytest.raises(ValueError):
        TransGlobalStore.from_dict({"finish_time": "not a time"})


def test_from_dict_ignores_unknown_keys():
    trans = TransGlobalStore.from_dict({"gid": "g", "unknown": 1})
    assert trans == TransGlobalStore(gid="g")


def test_branch_round_trip():
    now = datetime(2022, 1, 1, 0, 0, 0)
    branch = TransBranchStore(
        gid="g", url="http://localhost/x", bin_data=b"\x00\x01payload", branch_id="01", op="action",
        status="prepared", create_time=now, finish_time=now,
    )
    data = json.loads(branch.to_json())
    assert isinstance(data["bin_data"], str)
    assert TransBranchStore.from_dict(data) == branch


def test_branch_error_not_serialized():
    branch = TransBranchStore(gid="g", error=RuntimeError("boom"))
    assert branch.to_dict() == {"gid": "g"}
    assert TransBranchStore.from_dict(branch.to_dict()).error is None


def test_kv_always_has_core_fields():
    assert set(KVStore().to_dict()) == {"cat", "k", "v", "version"}


def test_kv_round_trip():
    now = datetime(2022, 3, 4, 5, 6, 7)
    kv = KVStore(id=3, create_time=now, update_time=now, cat="topics", k="t", v="[]", version=2)
    assert KVStore.from_dict(json.loads(kv.to_json())) == kv