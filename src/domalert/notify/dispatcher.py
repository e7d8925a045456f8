from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable

from ..models import AlertMessage, Delivered, DeliveryFailed, DeliveryOutcome, DeliveryResult
from .base import MessageChannel


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AlertDispatcher:
    """
    将一条 AlertMessage 投递给多个订阅者，并聚合为 DeliveryOutcome。

    - 每个订阅者独立投递，单个失败不影响其它订阅者
    - max_workers > 1 时用有界线程池并发发送，结果仍按订阅者顺序聚合
    - 本周期内不重试
    """

    channel: MessageChannel
    max_workers: int = 4
    dry_run: bool = False

    def channel_name(self) -> str:
        return self.channel.channel()

    def deliver(self, subscriber_id: str, message: AlertMessage) -> DeliveryResult:
        if self.dry_run:
            logger.info(
                "[dry-run] would notify: subscriber_id=%s event_id=%d domain=%s",
                subscriber_id,
                message.event_id,
                message.domain,
            )
            logger.debug("[dry-run] message preview:\n%s", message.text)
            return Delivered(subscriber_id=subscriber_id)
        try:
            self.channel.send(subscriber_id, message.text, parse_mode=message.parse_mode)
        except Exception as e:  # noqa: BLE001
            reason = f"{type(e).__name__}: {e}"
            logger.warning(
                "notify failed: channel=%s subscriber_id=%s event_id=%d domain=%s error=%s",
                self.channel_name(),
                subscriber_id,
                message.event_id,
                message.domain,
                reason,
            )
            return DeliveryFailed(subscriber_id=subscriber_id, reason=reason)
        return Delivered(subscriber_id=subscriber_id)

    def deliver_all(self, subscribers: Iterable[str], message: AlertMessage) -> DeliveryOutcome:
        recipients = sorted(set(subscribers))
        if not recipients:
            return DeliveryOutcome.from_results(message.event_id, message.domain, [])

        workers = max(1, min(int(self.max_workers), len(recipients)))
        if workers == 1:
            results = [self.deliver(sub, message) for sub in recipients]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="domalert-notify") as pool:
                results = list(pool.map(lambda sub: self.deliver(sub, message), recipients))

        outcome = DeliveryOutcome.from_results(message.event_id, message.domain, results)
        logger.info(
            "alerts sent: event_id=%d domain=%s delivered=%d failed=%d",
            outcome.event_id,
            outcome.domain,
            outcome.delivered,
            outcome.failed,
        )
        return outcome
