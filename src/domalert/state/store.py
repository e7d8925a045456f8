from __future__ import annotations

from typing import Protocol

from ..models import Subscription


class CursorStore(Protocol):
    """
    cursor 持久化接口：跨进程/跨实例持久的“已处理最大 event_id”。

    约定：
    - get_cursor 读不到时返回 0
    - advance_cursor 只允许单调前进（存储侧取 max），返回写入后的值
    """

    def ensure_schema(self) -> None: ...

    def get_cursor(self, cursor_key: str) -> int: ...

    def advance_cursor(self, cursor_key: str, cursor: int) -> int: ...

    def record_notify_failure(self, *, event_id: int, subscriber_id: str, channel: str, error: str) -> None: ...


class SubscriptionStore(Protocol):
    """
    订阅关系存储接口：(subscriber_id, domain) 唯一；核心管线只读。
    """

    def create(self, subscriber_id: str, domain: str) -> Subscription: ...

    def find_by_domain(self, domain: str) -> list[Subscription]: ...
