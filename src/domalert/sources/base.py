from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..models import FeedEvent


@dataclass(frozen=True, slots=True)
class FeedPage:
    events: list[FeedEvent]
    malformed: int = 0


class FeedSource(Protocol):
    """
    上游 feed 适配器：拉取最近一批事件（上游原始顺序），失败抛 FeedUnavailable。

    key() 同时作为 cursor 在状态库中的键。
    """

    def key(self) -> str: ...

    def fetch(self, limit: int) -> FeedPage: ...


def select_new_events(events: list[FeedEvent], cursor: int) -> list[FeedEvent]:
    """
    去重：只保留 event_id 严格大于 cursor 的事件，并按 event_id 升序返回。

    上游不保证顺序，按 id 升序处理才能让 cursor 推进单调且可定义；
    同一批次内重复的 id 只保留第一次出现。
    """
    selected: dict[int, FeedEvent] = {}
    for event in events:
        if event.event_id > cursor and event.event_id not in selected:
            selected[event.event_id] = event
    return [selected[k] for k in sorted(selected)]
