from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Mapping, Union


UNKNOWN_CURRENCY = "UNKNOWN"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_domain(value: str) -> str:
    return (value or "").strip().lower()


class EventKind(enum.Enum):
    """
    告警分类：只区分上游 taxonomy 中可告警的两种类型，其余一律 OTHER。
    """

    LISTED = "LISTED"
    PURCHASED = "PURCHASED"
    OTHER = "OTHER"

    @classmethod
    def from_upstream(cls, event_type: str | None) -> EventKind:
        return _UPSTREAM_KINDS.get(str(event_type or "").upper(), cls.OTHER)


_UPSTREAM_KINDS = {
    "TOKEN_LISTED": EventKind.LISTED,
    "NAME_TOKEN_PURCHASED": EventKind.PURCHASED,
}


@dataclass(frozen=True, slots=True)
class Money:
    amount: Decimal
    currency: str

    @classmethod
    def unknown(cls) -> Money:
        return cls(amount=Decimal(0), currency=UNKNOWN_CURRENCY)

    @property
    def is_known(self) -> bool:
        return self.amount > 0


@dataclass(frozen=True, slots=True)
class FeedEvent:
    """
    上游事件（拉取后不可变）。

    event_id 由上游分配，单调递增且唯一；cursor 的推进只依赖它。
    raw 保留原始 payload，下游不依赖其中的私有字段。
    """

    event_id: int
    kind: EventKind
    event_type: str
    domain: str
    price: Money | None
    raw: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class AlertCandidate:
    event_id: int
    kind: EventKind
    domain: str
    price: Money


@dataclass(frozen=True, slots=True)
class Ignored:
    event_id: int
    reason: str


Classification = Union[AlertCandidate, Ignored]


@dataclass(frozen=True, slots=True)
class Subscription:
    subscriber_id: str
    domain: str
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AlertMessage:
    """单条事件渲染后的消息文本（临时对象，不落库）。"""

    event_id: int
    domain: str
    text: str
    parse_mode: str | None = "Markdown"


@dataclass(frozen=True, slots=True)
class Delivered:
    subscriber_id: str


@dataclass(frozen=True, slots=True)
class DeliveryFailed:
    subscriber_id: str
    reason: str


DeliveryResult = Union[Delivered, DeliveryFailed]


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    """
    单条事件的投递聚合结果：成功/失败计数 + 失败的订阅者及原因。
    """

    event_id: int
    domain: str
    attempted: int
    delivered: int
    failures: tuple[DeliveryFailed, ...] = ()

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failed_subscribers(self) -> tuple[str, ...]:
        return tuple(f.subscriber_id for f in self.failures)

    @classmethod
    def from_results(cls, event_id: int, domain: str, results: list[DeliveryResult]) -> DeliveryOutcome:
        failures = tuple(r for r in results if isinstance(r, DeliveryFailed))
        return cls(
            event_id=event_id,
            domain=domain,
            attempted=len(results),
            delivered=len(results) - len(failures),
            failures=failures,
        )

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "domain": self.domain,
            "attempted": self.attempted,
            "delivered": self.delivered,
            "failed": self.failed,
            "failed_subscribers": list(self.failed_subscribers),
        }
