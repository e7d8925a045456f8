from __future__ import annotations

from dataclasses import dataclass

from ..errors import MalformedEvent
from ..models import AlertCandidate, Classification, EventKind, FeedEvent, Ignored, Money


ALERTABLE_KINDS = (EventKind.LISTED, EventKind.PURCHASED)


@dataclass(frozen=True, slots=True)
class EventClassifier:
    """
    将 FeedEvent 归类为 AlertCandidate 或 Ignored。

    - 只有 LISTED / PURCHASED 可告警，其余返回 Ignored("not_alertable")
    - 可告警但缺少域名的事件视为 MalformedEvent，返回 Ignored("malformed: ...")，
      不会中断同批次其它事件
    """

    alertable_kinds: tuple[EventKind, ...] = ALERTABLE_KINDS

    def classify(self, event: FeedEvent) -> Classification:
        if event.kind not in self.alertable_kinds:
            return Ignored(event_id=event.event_id, reason="not_alertable")
        try:
            return self._to_candidate(event)
        except MalformedEvent as e:
            return Ignored(event_id=event.event_id, reason=f"malformed: {e}")

    def _to_candidate(self, event: FeedEvent) -> AlertCandidate:
        domain = (event.domain or "").strip()
        if not domain:
            raise MalformedEvent(f"event {event.event_id} ({event.event_type}) has no domain name")
        return AlertCandidate(
            event_id=event.event_id,
            kind=event.kind,
            domain=domain,
            price=event.price if event.price is not None else Money.unknown(),
        )


def is_malformed(result: Classification) -> bool:
    return isinstance(result, Ignored) and result.reason.startswith("malformed")
