from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import AppConfig
from .errors import FeedUnavailable
from .http_utils import HttpClient
from .models import AlertCandidate, DeliveryOutcome, FeedEvent, utc_now
from .notify.dispatcher import AlertDispatcher
from .notify.formatter import format_alert_message
from .notify.telegram import TelegramChannel
from .rules.classifier import EventClassifier, is_malformed
from .rules.resolver import SubscriberResolver
from .sources.base import FeedSource, select_new_events
from .sources.doma import DomaPollSource
from .state.sqlite_store import SqliteStateStore
from .state.store import CursorStore, SubscriptionStore


logger = logging.getLogger(__name__)


class CycleState(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    CLASSIFYING_AND_NOTIFYING = "classifying_and_notifying"
    ADVANCING = "advancing"
    FAILED = "failed"


class CursorPolicy(enum.Enum):
    ALWAYS_ADVANCE = "always_advance"
    HOLD_ON_FAILURE = "hold_on_failure"


@dataclass(slots=True)
class RunOnceReport:
    status: str
    cursor_before: int
    cursor_after: int
    events_fetched: int
    events_new: int
    events_alertable: int
    events_ignored: int
    events_malformed: int
    events_failed: int
    resolution_failures: int
    notify_attempts: int
    notify_successes: int
    notify_failures: int
    outcomes: tuple[DeliveryOutcome, ...]
    error: str | None
    started_at: datetime
    finished_at: datetime
    duration_ms: int

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "events_fetched": self.events_fetched,
            "events_new": self.events_new,
            "events_alertable": self.events_alertable,
            "events_ignored": self.events_ignored,
            "events_malformed": self.events_malformed,
            "events_failed": self.events_failed,
            "resolution_failures": self.resolution_failures,
            "notify_attempts": self.notify_attempts,
            "notify_successes": self.notify_successes,
            "notify_failures": self.notify_failures,
            "outcomes": [o.to_json_dict() for o in self.outcomes],
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class _CycleCounters:
    events_fetched: int = 0
    events_new: int = 0
    events_alertable: int = 0
    events_ignored: int = 0
    events_malformed: int = 0
    events_failed: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)


@dataclass(slots=True)
class Runner:
    """
    核心执行器（Poll Orchestrator）：一次调用完成一个轮询周期：
    Fetch -> Dedupe(cursor) -> Classify -> Resolve -> Notify -> Advance(cursor)

    每次调用都视为全新进程：唯一跨周期状态是 state 中持久化的 cursor，
    Runner 自身不在内存里保留任何进度。
    """

    state: CursorStore
    subscriptions: SubscriptionStore
    source: FeedSource
    dispatcher: AlertDispatcher
    classifier: EventClassifier = field(default_factory=EventClassifier)
    fetch_limit: int = 100
    cursor_policy: CursorPolicy = CursorPolicy.ALWAYS_ADVANCE
    parse_mode: str | None = "Markdown"
    last_state: CycleState = CycleState.IDLE

    def run_once(self) -> RunOnceReport:
        """
        执行一个轮询周期。

        只有 fetch 失败是周期级致命错误（此时没有任何副作用，cursor 不动）；
        单条事件/单个订阅者的失败都被隔离并计数。
        """
        started_at = utc_now()
        start_t = time.monotonic()
        counters = _CycleCounters()

        self.state.ensure_schema()
        cursor_key = self.source.key()
        cursor_before = self.state.get_cursor(cursor_key)

        self.last_state = CycleState.FETCHING
        try:
            page = self.source.fetch(self.fetch_limit)
        except FeedUnavailable as e:
            self.last_state = CycleState.FAILED
            logger.exception("feed fetch failed: source_key=%s cursor=%d", cursor_key, cursor_before)
            return self._report(
                "failed", cursor_before, cursor_before, counters, 0, f"{type(e).__name__}: {e}", started_at, start_t
            )

        counters.events_fetched = len(page.events)
        counters.events_malformed = page.malformed

        self.last_state = CycleState.DEDUPING
        new_events = select_new_events(page.events, cursor_before)
        counters.events_new = len(new_events)
        logger.info(
            "fetched events: source_key=%s fetched=%d new=%d malformed=%d cursor=%d",
            cursor_key,
            counters.events_fetched,
            counters.events_new,
            counters.events_malformed,
            cursor_before,
        )
        if not new_events:
            self.last_state = CycleState.IDLE
            status = "partial" if counters.events_malformed else "success"
            return self._report(status, cursor_before, cursor_before, counters, 0, None, started_at, start_t)

        self.last_state = CycleState.CLASSIFYING_AND_NOTIFYING
        resolver = SubscriberResolver(self.subscriptions)
        # (event, 是否有失败)
        handled: list[tuple[FeedEvent, bool]] = []
        for event in new_events:
            try:
                outcome = self._process_event(event, resolver, counters)
            except Exception:  # noqa: BLE001
                counters.events_failed += 1
                logger.exception("event processing failed: event_id=%d domain=%s", event.event_id, event.domain)
                handled.append((event, True))
                continue
            handled.append((event, outcome is not None and outcome.failed > 0))

        self.last_state = CycleState.ADVANCING
        target = self._cursor_target(cursor_before, handled)
        cursor_after = cursor_before
        if target > cursor_before:
            cursor_after = self.state.advance_cursor(cursor_key, target)
        if target < handled[-1][0].event_id:
            logger.warning(
                "cursor held after delivery failure: source_key=%s cursor=%d newest_event_id=%d",
                cursor_key,
                cursor_after,
                handled[-1][0].event_id,
            )
        self.last_state = CycleState.IDLE

        notify_failures = sum(o.failed for o in counters.outcomes)
        degraded = (
            notify_failures > 0
            or resolver.failures > 0
            or counters.events_malformed > 0
            or counters.events_failed > 0
        )
        return self._report(
            "partial" if degraded else "success",
            cursor_before,
            cursor_after,
            counters,
            resolver.failures,
            None,
            started_at,
            start_t,
        )

    def _process_event(
        self, event: FeedEvent, resolver: SubscriberResolver, counters: _CycleCounters
    ) -> DeliveryOutcome | None:
        result = self.classifier.classify(event)
        if not isinstance(result, AlertCandidate):
            counters.events_ignored += 1
            if is_malformed(result):
                counters.events_malformed += 1
                logger.warning("skipping malformed event: event_id=%d reason=%s", event.event_id, result.reason)
            else:
                logger.debug("event ignored: event_id=%d type=%s", event.event_id, event.event_type)
            return None

        counters.events_alertable += 1
        subscribers = resolver.resolve(result.domain)
        if not subscribers:
            logger.debug("no subscribers: event_id=%d domain=%s", result.event_id, result.domain)
            return None

        message = format_alert_message(result, parse_mode=self.parse_mode)
        outcome = self.dispatcher.deliver_all(subscribers, message)
        counters.outcomes.append(outcome)
        for failure in outcome.failures:
            self._record_failure(outcome.event_id, failure.subscriber_id, failure.reason)
        return outcome

    def _record_failure(self, event_id: int, subscriber_id: str, reason: str) -> None:
        # best-effort：审计写失败只记日志，不影响本事件结果
        try:
            self.state.record_notify_failure(
                event_id=event_id,
                subscriber_id=subscriber_id,
                channel=self.dispatcher.channel_name(),
                error=reason,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "record notify failure failed: event_id=%d subscriber_id=%s", event_id, subscriber_id
            )

    def _cursor_target(self, cursor_before: int, handled: list[tuple[FeedEvent, bool]]) -> int:
        if self.cursor_policy is CursorPolicy.ALWAYS_ADVANCE:
            return max(cursor_before, max(event.event_id for event, _ in handled))

        # hold_on_failure：只推进到第一个有失败的事件之前
        target = cursor_before
        for event, failed in handled:
            if failed:
                break
            target = event.event_id
        return target

    @staticmethod
    def _report(
        status: str,
        cursor_before: int,
        cursor_after: int,
        counters: _CycleCounters,
        resolution_failures: int,
        error: str | None,
        started_at: datetime,
        start_t: float,
    ) -> RunOnceReport:
        outcomes = tuple(counters.outcomes)
        return RunOnceReport(
            status=status,
            cursor_before=cursor_before,
            cursor_after=cursor_after,
            events_fetched=counters.events_fetched,
            events_new=counters.events_new,
            events_alertable=counters.events_alertable,
            events_ignored=counters.events_ignored,
            events_malformed=counters.events_malformed,
            events_failed=counters.events_failed,
            resolution_failures=resolution_failures,
            notify_attempts=sum(o.attempted for o in outcomes),
            notify_successes=sum(o.delivered for o in outcomes),
            notify_failures=sum(o.failed for o in outcomes),
            outcomes=outcomes,
            error=error,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=int((time.monotonic() - start_t) * 1000),
        )


def build_runner(config: AppConfig) -> Runner:
    """
    根据配置构建可运行的 Runner。

    - 统一在这里做“配置 -> 实例”的装配，Runner 内只关注流程编排
    - 对 secret/token 只通过环境变量读取，避免落盘
    """
    http = HttpClient()
    state = SqliteStateStore(config.sqlite_path)

    source = DomaPollSource(
        http=http,
        api_key=config.resolve_env(config.feed.api_key_env),
        url=config.feed.url,
        cursor_key=config.feed.cursor_key,
    )

    bot_token = config.resolve_env(config.telegram.bot_token_env) or ""
    if not bot_token and not config.delivery.dry_run:
        logger.warning("telegram bot token is empty: env=%s; deliveries will fail", config.telegram.bot_token_env)
    channel = TelegramChannel(bot_token=bot_token, http=http, api_base=config.telegram.api_base)
    dispatcher = AlertDispatcher(
        channel=channel,
        max_workers=config.delivery.max_workers,
        dry_run=config.delivery.dry_run,
    )

    return Runner(
        state=state,
        subscriptions=state,
        source=source,
        dispatcher=dispatcher,
        classifier=EventClassifier(alertable_kinds=config.delivery.alertable_kinds),
        fetch_limit=config.feed.limit,
        cursor_policy=CursorPolicy(config.delivery.cursor_policy),
        parse_mode=config.telegram.parse_mode,
    )
