from __future__ import annotations

from decimal import Decimal

from ..models import AlertCandidate, AlertMessage, EventKind, Money


_LABELS = {
    EventKind.LISTED: "🔥 Just Listed",
    EventKind.PURCHASED: "📈 Significant Sale",
}


def format_amount(amount: Decimal) -> str:
    """千分位 + 最多 3 位小数，去掉末尾的 0：5 -> "5"，1234.5 -> "1,234.5"。"""
    text = f"{amount:,.3f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_price(price: Money) -> str:
    if not price.is_known:
        return "N/A"
    return f"{format_amount(price.amount)} {price.currency}"


def format_alert_message(candidate: AlertCandidate, *, parse_mode: str | None = "Markdown") -> AlertMessage:
    label = _LABELS.get(candidate.kind, candidate.kind.value.title())
    lines = [
        f"{label} Alert!",
        "",
        f"**Domain:** `{candidate.domain}`",
        f"**Price:** {format_price(candidate.price)}",
    ]
    return AlertMessage(
        event_id=candidate.event_id,
        domain=candidate.domain,
        text="\n".join(lines),
        parse_mode=parse_mode,
    )
