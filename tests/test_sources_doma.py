import http.client
import json
import urllib.error
from dataclasses import dataclass, field
from decimal import Decimal

import pytest

from domalert.errors import FeedUnavailable
from domalert.http_utils import HttpResponse
from domalert.models import EventKind, FeedEvent
from domalert.sources.base import select_new_events
from domalert.sources.doma import DomaPollSource, parse_price


POLL_URL = "https://api-testnet.doma.xyz/v1/poll"


@dataclass
class FakeHttp:
    response: HttpResponse | None = None
    error: Exception | None = None
    calls: list[tuple[str, dict]] = field(default_factory=list)

    def get(self, url: str, *, headers=None) -> HttpResponse:  # noqa: ANN001
        self.calls.append((url, dict(headers or {})))
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def _ok(payload, status: int = 200) -> HttpResponse:  # noqa: ANN001
    return HttpResponse(status=status, url=POLL_URL, headers={}, body=json.dumps(payload).encode("utf-8"))


def _event(event_id: int) -> FeedEvent:
    return FeedEvent(event_id=event_id, kind=EventKind.OTHER, event_type="X", domain="a.ai", price=None)


def test_fetch_sends_api_key_and_limit() -> None:
    http = FakeHttp(response=_ok({"events": []}))
    src = DomaPollSource(http=http, api_key="k1")
    page = src.fetch(100)
    assert page.events == []
    url, headers = http.calls[0]
    assert url == f"{POLL_URL}?limit=100"
    assert headers["Api-Key"] == "k1"


def test_fetch_parses_events_in_upstream_order() -> None:
    payload = {
        "events": [
            {
                "id": 7,
                "type": "TOKEN_LISTED",
                "name": "crypto.ai",
                "eventData": {"payment": {"price": 5_000_000, "currencySymbol": "USDC"}},
            },
            {"id": 3, "type": "NAME_TOKEN_PURCHASED", "name": "b.com"},
            {"id": 5, "type": "NAME_RENEWED", "name": "c.xyz"},
        ]
    }
    src = DomaPollSource(http=FakeHttp(response=_ok(payload)), api_key=None)
    page = src.fetch(10)
    assert [e.event_id for e in page.events] == [7, 3, 5]
    first = page.events[0]
    assert first.kind is EventKind.LISTED
    assert first.domain == "crypto.ai"
    assert first.price is not None
    assert first.price.amount == Decimal("5")
    assert first.price.currency == "USDC"
    assert page.events[1].kind is EventKind.PURCHASED
    assert page.events[1].price is None
    assert page.events[2].kind is EventKind.OTHER
    assert page.malformed == 0


def test_malformed_items_are_skipped_not_fatal() -> None:
    payload = {"events": [{"type": "TOKEN_LISTED"}, "garbage", {"id": "x1"}, {"id": 2, "type": "TOKEN_LISTED"}]}
    src = DomaPollSource(http=FakeHttp(response=_ok(payload)), api_key=None)
    page = src.fetch(10)
    assert [e.event_id for e in page.events] == [2]
    assert page.malformed == 3


def test_price_extraction_is_tolerant() -> None:
    assert parse_price(None) is None
    assert parse_price({"payment": None}) is None
    bad = parse_price({"payment": {"price": "not-a-number", "currencySymbol": None}})
    assert bad is not None
    assert bad.amount == Decimal(0)
    assert bad.currency == "UNKNOWN"
    partial = parse_price({"payment": {"price": 1_500_000}})
    assert partial is not None
    assert partial.amount == Decimal("1.5")
    assert partial.currency == "UNKNOWN"


@pytest.mark.parametrize(
    "http",
    [
        FakeHttp(error=urllib.error.URLError("connection refused")),
        FakeHttp(error=urllib.error.HTTPError(POLL_URL, 503, "unavailable", None, None)),
        FakeHttp(response=HttpResponse(status=200, url=POLL_URL, headers={}, body=b"<html>")),
        FakeHttp(response=_ok([1, 2, 3])),
        FakeHttp(response=_ok({"events": "nope"})),
        FakeHttp(error=TimeoutError("timed out")),
        FakeHttp(error=http.client.IncompleteRead(b'{"events": [')),
        FakeHttp(error=http.client.BadStatusLine("garbage")),
    ],
)
def test_transport_and_payload_errors_raise_feed_unavailable(http: FakeHttp) -> None:
    src = DomaPollSource(http=http, api_key="k")
    with pytest.raises(FeedUnavailable):
        src.fetch(100)


def test_limit_must_be_positive() -> None:
    src = DomaPollSource(http=FakeHttp(response=_ok({"events": []})), api_key=None)
    with pytest.raises(ValueError):
        src.fetch(0)


def test_select_new_events_filters_and_sorts_ascending() -> None:
    events = [_event(5), _event(3), _event(7)]
    selected = select_new_events(events, cursor=4)
    assert [e.event_id for e in selected] == [5, 7]


def test_select_new_events_collapses_duplicate_ids() -> None:
    selected = select_new_events([_event(9), _event(9), _event(8)], cursor=0)
    assert [e.event_id for e in selected] == [8, 9]
    assert select_new_events([_event(1), _event(2)], cursor=2) == []


def test_price_overflowing_decimal_context_falls_back_to_zero() -> None:
    money = parse_price({"payment": {"price": "1e9999999", "currencySymbol": "USDC"}})
    assert money is not None
    assert money.amount == Decimal(0)
    assert money.currency == "USDC"


def test_overflowing_price_does_not_drop_rest_of_batch() -> None:
    payload = {
        "events": [
            {
                "id": 1,
                "type": "TOKEN_LISTED",
                "name": "huge.ai",
                "eventData": {"payment": {"price": "1e9999999", "currencySymbol": "USDC"}},
            },
            {
                "id": 2,
                "type": "TOKEN_LISTED",
                "name": "crypto.ai",
                "eventData": {"payment": {"price": 5_000_000, "currencySymbol": "USDC"}},
            },
        ]
    }
    page = DomaPollSource(http=FakeHttp(response=_ok(payload)), api_key=None).fetch(10)
    assert [e.event_id for e in page.events] == [1, 2]
    assert page.events[0].price is not None and not page.events[0].price.is_known
    assert page.events[1].price is not None and page.events[1].price.amount == Decimal("5")
    assert page.malformed == 0


def test_unexpected_item_error_is_counted_as_malformed(monkeypatch) -> None:  # noqa: ANN001
    import domalert.sources.doma as doma

    real_parse_price = doma.parse_price

    def flaky_parse_price(event_data):  # noqa: ANN001, ANN202
        if event_data == {"boom": True}:
            raise ArithmeticError("unexpected")
        return real_parse_price(event_data)

    monkeypatch.setattr(doma, "parse_price", flaky_parse_price)
    payload = {"events": [{"id": 1, "type": "TOKEN_LISTED", "eventData": {"boom": True}}, {"id": 2, "type": "X"}]}
    page = DomaPollSource(http=FakeHttp(response=_ok(payload)), api_key=None).fetch(10)
    assert [e.event_id for e in page.events] == [2]
    assert page.malformed == 1
