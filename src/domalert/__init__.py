"""
Domain Alert Sentinel (domalert)

按固定节奏轮询 Doma 事件 feed，基于持久化 cursor 去重，将上架/成交事件
匹配到订阅了该域名的用户，并通过 Telegram 推送告警。
"""

from .models import AlertCandidate, EventKind, FeedEvent, Ignored

__all__ = [
    "AlertCandidate",
    "EventKind",
    "FeedEvent",
    "Ignored",
]
