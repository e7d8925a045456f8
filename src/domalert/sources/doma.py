from __future__ import annotations

import http.client
import logging
import urllib.error
from dataclasses import dataclass
from decimal import Decimal, DecimalException
from typing import Any, Mapping

from ..errors import FeedUnavailable, MalformedEvent
from ..http_utils import HttpClient, with_query_params
from ..models import UNKNOWN_CURRENCY, EventKind, FeedEvent, Money
from .base import FeedPage


logger = logging.getLogger(__name__)

DEFAULT_POLL_URL = "https://api-testnet.doma.xyz/v1/poll"
DEFAULT_LIMIT = 100
PRICE_SCALE = Decimal(10) ** 6


def parse_price(event_data: Any) -> Money | None:
    """
    从 eventData.payment 提取价格：price 为整数定点数（除以 10^6），currencySymbol 为币种。

    容错：缺失或非法的部分回落到 Money.unknown() 的对应字段，不抛异常；
    没有 payment 对象时返回 None。
    """
    if not isinstance(event_data, Mapping):
        return None
    payment = event_data.get("payment")
    if not isinstance(payment, Mapping):
        return None

    amount = Decimal(0)
    raw_price = payment.get("price")
    if not isinstance(raw_price, bool) and raw_price is not None:
        try:
            value = Decimal(str(raw_price))
            if value.is_finite() and value >= 0:
                amount = value / PRICE_SCALE
        except DecimalException:
            amount = Decimal(0)

    currency = payment.get("currencySymbol")
    if not isinstance(currency, str) or not currency.strip():
        currency = UNKNOWN_CURRENCY
    return Money(amount=amount, currency=currency.strip())


def parse_event(item: Any) -> FeedEvent:
    if not isinstance(item, Mapping):
        raise MalformedEvent(f"event is not an object: {type(item).__name__}")
    raw_id = item.get("id")
    if isinstance(raw_id, bool):
        raise MalformedEvent(f"event id is not an integer: {raw_id!r}")
    try:
        event_id = int(raw_id)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedEvent(f"event id is not an integer: {raw_id!r}") from e
    if isinstance(raw_id, float) and raw_id != event_id:
        raise MalformedEvent(f"event id is not an integer: {raw_id!r}")

    event_type = str(item.get("type") or "")
    name = item.get("name")
    return FeedEvent(
        event_id=event_id,
        kind=EventKind.from_upstream(event_type),
        event_type=event_type,
        domain=name.strip() if isinstance(name, str) else "",
        price=parse_price(item.get("eventData")),
        raw=item,
    )


@dataclass(slots=True)
class DomaPollSource:
    """
    Doma poll API：GET {url}?limit=N，Api-Key 头鉴权，响应为 {"events": [...]}。

    任何网络错误、非 2xx、非 JSON 或结构不符都统一包装为 FeedUnavailable；
    单条事件无法解析（缺 id 等）只计数跳过。
    """

    http: HttpClient
    api_key: str | None
    url: str = DEFAULT_POLL_URL
    cursor_key: str = "doma:events"

    def key(self) -> str:
        return self.cursor_key

    def _headers(self) -> Mapping[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            headers["Api-Key"] = self.api_key
        return headers

    def fetch(self, limit: int = DEFAULT_LIMIT) -> FeedPage:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValueError(f"limit must be a positive integer, got {limit!r}")

        url = with_query_params(self.url, {"limit": str(limit)})
        try:
            resp = self.http.get(url, headers=self._headers())
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as e:
            raise FeedUnavailable(f"feed request failed: {type(e).__name__}: {e}") from e

        if resp.status < 200 or resp.status >= 300:
            raise FeedUnavailable(f"feed returned status={resp.status}: {resp.url}")
        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise FeedUnavailable(f"feed returned invalid JSON: {resp.body[:200]!r}") from e
        if not isinstance(data, dict):
            raise FeedUnavailable(f"feed expected object, got {type(data).__name__}")
        items = data.get("events")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise FeedUnavailable(f"feed 'events' expected list, got {type(items).__name__}")

        events: list[FeedEvent] = []
        malformed = 0
        for item in items:
            try:
                events.append(parse_event(item))
            except MalformedEvent as e:
                malformed += 1
                logger.warning("skipping malformed feed item: %s", e)
            except Exception as e:  # noqa: BLE001
                malformed += 1
                logger.warning("skipping unparsable feed item: %s: %s", type(e).__name__, e)
        return FeedPage(events=events, malformed=malformed)
