"""Message topics and their subscribers, kept as key-values in the store."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .store import Store

log = logging.getLogger(__name__)

TOPICS_CAT = "topics"


@dataclass
class Subscriber:
    """An endpoint that receives the messages of a topic."""

    url: str = ""
    remark: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "remark": self.remark}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscriber:
        return cls(url=str(data.get("url") or ""), remark=str(data.get("remark") or ""))


@dataclass
class Topic:
    """A topic with its subscribers and the version of its stored record."""

    name: str = ""
    subscribers: list[Subscriber] = field(default_factory=list)
    version: int = 0


def _dump_subscribers(subscribers: list[Subscriber]) -> str:
    return json.dumps([s.to_dict() for s in subscribers], separators=(",", ":"), ensure_ascii=False)


def _load_subscribers(text: str) -> list[Subscriber]:
    return [Subscriber.from_dict(item) for item in json.loads(text) or []]


def _check(topic: str, url: str) -> None:
    if topic == "":
        raise ValueError("empty topic")
    if url == "":
        raise ValueError("empty url")


def subscribe(store: Store, topic: str, url: str, remark: str = "") -> None:
    """Add a subscriber to a topic, creating the topic if needed."""
    _check(topic, url)
    new = Subscriber(url=url, remark=remark)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        store.create_kv(TOPICS_CAT, topic, _dump_subscribers([new]))
        return
    kv = kvs[0]
    subscribers = _load_subscribers(kv.v)
    if any(s.url == url for s in subscribers):
        raise ValueError("this url exists")
    subscribers.append(new)
    kv.v = _dump_subscribers(subscribers)
    store.update_kv(kv)


def unsubscribe(store: Store, topic: str, url: str) -> None:
    """Remove a subscriber from a topic."""
    _check(topic, url)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        raise ValueError("no such a topic")
    kv = kvs[0]
    subscribers = _load_subscribers(kv.v)
    if not subscribers:
        raise ValueError("this topic is empty")
    remaining = list(subscribers)
    for index, subscriber in enumerate(subscribers):
        if subscriber.url == url:
            del remaining[index]
            break
    else:
        raise ValueError("no such an url ")
    kv.v = _dump_subscribers(remaining)
    store.update_kv(kv)


def delete_topic(store: Store, topic: str) -> None:
    """Delete a topic and all its subscribers."""
    if topic == "":
        raise ValueError("empty topic")
    store.delete_kv(TOPICS_CAT, topic)


class TopicsMap:
    """An in-memory copy of the stored topics, refreshed from the store."""

    def __init__(self) -> None:
        self._topics: dict[str, Topic] = {}
        self._lock = threading.Lock()

    def update(self, store: Store) -> None:
        """Load topics whose stored version is newer than the copy held."""
        kvs = store.find_kv(TOPICS_CAT, "")
        with self._lock:
            for kv in kvs:
                old = self._topics.get(kv.k)
                if old is not None and old.version >= kv.version:
                    continue
                new = Topic(name=kv.k, subscribers=_load_subscribers(kv.v), version=kv.version)
                self._topics[kv.k] = new
                log.info("topic updated. old topic:%s new topic:%s", old, new)
            log.info("all topic updated. topic:%s", self._topics)

    def urls(self, topic: str) -> list[str]:
        """The subscriber URLs of a topic, empty if it is unknown."""
        with self._lock:
            found = self._topics.get(topic)
            return [] if found is None else [s.url for s in found.subscribers]

    def get(self, topic: str) -> Topic | None:
        """The topic held under this name, or None."""
        with self._lock:
            return self._topics.get(topic)