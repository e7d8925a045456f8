from __future__ import annotations


class DomalertError(Exception):
    """告警管线的统一异常基类。"""


class FeedUnavailable(DomalertError):
    """
    上游 feed 不可用：网络错误、非 2xx、响应体无法解析。

    对一次轮询周期是致命的：不产生任何通知，不推进 cursor。
    """


class MalformedEvent(DomalertError):
    """单条事件字段缺失/非法；只跳过该事件，不影响同批其它事件。"""


class SubscriberResolutionFailed(DomalertError):
    """订阅存储查询失败；按 0 订阅者处理并记 warning。"""

    def __init__(self, domain: str, cause: BaseException) -> None:
        super().__init__(f"failed to resolve subscribers for {domain!r}: {type(cause).__name__}: {cause}")
        self.domain = domain
        self.cause = cause


class SubscriptionExists(DomalertError):
    """(subscriber_id, domain) 已存在时由 create 抛出。"""

    def __init__(self, subscriber_id: str, domain: str) -> None:
        super().__init__(f"subscription already exists: subscriber_id={subscriber_id} domain={domain}")
        self.subscriber_id = subscriber_id
        self.domain = domain


class ConfigError(DomalertError, ValueError):
    pass
