"""Records kept by the storage backends: global transactions, branches, key-values."""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_SUCCEED = "succeed"
STATUS_FAILED = "failed"
STATUS_ABORTING = "aborting"

_TIME_RE = re.compile(r"^(?P<base>[^.]*?)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$")


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    match = _TIME_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid time: {value!r}")
    text = match["base"]
    if match["frac"]:
        text += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    if tz == "Z":
        tz = "+00:00"
    if tz:
        text += tz
    return datetime.fromisoformat(text)


def _compact(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    """Drop empty values, as the stored JSON leaves them out."""
    return {key: value for key, value in pairs if value}


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _int(value: Any) -> int:
    return int(value or 0)


def _str(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class TransOptions:
    """Per-transaction options chosen by the client."""

    wait_result: bool = False
    timeout_to_fail: int = 0
    retry_interval: int = 0
    branch_headers: dict[str, str] = field(default_factory=dict)
    request_timeout: int = 0
    retry_limit: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            [
                ("wait_result", self.wait_result),
                ("timeout_to_fail", self.timeout_to_fail),
                ("retry_interval", self.retry_interval),
                ("branch_headers", dict(self.branch_headers)),
                ("request_timeout", self.request_timeout),
                ("retry_limit", self.retry_limit),
            ]
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransOptions:
        return cls(
            wait_result=bool(data.get("wait_result", False)),
            timeout_to_fail=_int(data.get("timeout_to_fail")),
            retry_interval=_int(data.get("retry_interval")),
            branch_headers={str(k): str(v) for k, v in (data.get("branch_headers") or {}).items()},
            request_timeout=_int(data.get("request_timeout")),
            retry_limit=_int(data.get("retry_limit")),
        )


@dataclass
class TransGlobalExt:
    """Extra values stored together in one field of a global transaction."""

    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _compact([("headers", dict(self.headers))])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransGlobalExt:
        return cls(headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()})


@dataclass
class TransGlobalStore:
    """A stored global transaction."""

    TABLE_NAME: ClassVar[str] = "trans_global"

    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    gid: str = ""
    trans_type: str = ""
    steps: list[dict[str, str]] = field(default_factory=list)
    payloads: list[str] = field(default_factory=list)
    bin_payloads: list[bytes] = field(default_factory=list)
    status: str = ""
    query_prepared: str = ""
    protocol: str = ""
    finish_time: datetime | None = None
    rollback_time: datetime | None = None
    result: str = ""
    rollback_reason: str = ""
    options: str = ""
    custom_data: str = ""
    next_cron_interval: int = 0
    next_cron_time: datetime | None = None
    owner: str = ""
    ext: TransGlobalExt = field(default_factory=TransGlobalExt)
    ext_data: str = ""
    trans_options: TransOptions = field(default_factory=TransOptions)

    def is_finished(self) -> bool:
        """True once the transaction has succeeded or failed."""
        return self.status in (STATUS_FAILED, STATUS_SUCCEED)

    def to_dict(self) -> dict[str, Any]:
        """The JSON form; binary payloads and ext are not part of it."""
        data = _compact(
            [
                ("id", self.id),
                ("create_time", _format_time(self.create_time)),
                ("update_time", _format_time(self.update_time)),
                ("gid", self.gid),
                ("trans_type", self.trans_type),
                ("steps", [dict(step) for step in self.steps]),
                ("payloads", list(self.payloads)),
                ("status", self.status),
                ("query_prepared", self.query_prepared),
                ("protocol", self.protocol),
                ("finish_time", _format_time(self.finish_time)),
                ("rollback_time", _format_time(self.rollback_time)),
                ("result", self.result),
                ("rollback_reason", self.rollback_reason),
                ("options", self.options),
                ("custom_data", self.custom_data),
                ("next_cron_interval", self.next_cron_interval),
                ("next_cron_time", _format_time(self.next_cron_time)),
                ("owner", self.owner),
                ("ext_data", self.ext_data),
            ]
        )
        data.update(self.trans_options.to_dict())
        return data

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransGlobalStore:
        return cls(
            id=_int(data.get("id")),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            gid=_str(data.get("gid")),
            trans_type=_str(data.get("trans_type")),
            steps=[{str(k): _str(v) for k, v in step.items()} for step in data.get("steps") or []],
            payloads=[_str(p) for p in data.get("payloads") or []],
            status=_str(data.get("status")),
            query_prepared=_str(data.get("query_prepared")),
            protocol=_str(data.get("protocol")),
            finish_time=_parse_time(data.get("finish_time")),
            rollback_time=_parse_time(data.get("rollback_time")),
            result=_str(data.get("result")),
            rollback_reason=_str(data.get("rollback_reason")),
            options=_str(data.get("options")),
            custom_data=_str(data.get("custom_data")),
            next_cron_interval=_int(data.get("next_cron_interval")),
            next_cron_time=_parse_time(data.get("next_cron_time")),
            owner=_str(data.get("owner")),
            ext_data=_str(data.get("ext_data")),
            trans_options=TransOptions.from_dict(data),
        )


@dataclass
class TransBranchStore:
    """A stored branch operation of a global transaction."""

    TABLE_NAME: ClassVar[str] = "trans_branch_op"

    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    gid: str = ""
    url: str = ""
    bin_data: bytes = b""
    branch_id: str = ""
    op: str = ""
    status: str = ""
    finish_time: datetime | None = None
    rollback_time: datetime | None = None
    error: Exception | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """The JSON form; binary data is base64 encoded."""
        return _compact(
            [
                ("id", self.id),
                ("create_time", _format_time(self.create_time)),
                ("update_time", _format_time(self.update_time)),
                ("gid", self.gid),
                ("url", self.url),
                ("bin_data", base64.b64encode(self.bin_data).decode("ascii")),
                ("branch_id", self.branch_id),
                ("op", self.op),
                ("status", self.status),
                ("finish_time", _format_time(self.finish_time)),
                ("rollback_time", _format_time(self.rollback_time)),
            ]
        )

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransBranchStore:
        raw = data.get("bin_data")
        return cls(
            id=_int(data.get("id")),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            gid=_str(data.get("gid")),
            url=_str(data.get("url")),
            bin_data=base64.b64decode(raw) if raw else b"",
            branch_id=_str(data.get("branch_id")),
            op=_str(data.get("op")),
            status=_str(data.get("status")),
            finish_time=_parse_time(data.get("finish_time")),
            rollback_time=_parse_time(data.get("rollback_time")),
        )


@dataclass
class KVStore:
    """A versioned key-value record grouped by category."""

    TABLE_NAME: ClassVar[str] = "kv"

    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    cat: str = ""
    k: str = ""
    v: str = ""
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = _compact(
            [
                ("id", self.id),
                ("create_time", _format_time(self.create_time)),
                ("update_time", _format_time(self.update_time)),
            ]
        )
        data.update({"cat": self.cat, "k": self.k, "v": self.v, "version": self.version})
        return data

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KVStore:
        return cls(
            id=_int(data.get("id")),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            cat=_str(data.get("cat")),
            k=_str(data.get("k")),
            v=_str(data.get("v")),
            version=_int(data.get("version")),
        )