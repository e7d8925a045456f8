from __future__ import annotations

from typing import Protocol


class MessageChannel(Protocol):
    """
    消息渠道接口：向单个接收者发送一条文本消息。

    约定：
    - send 失败抛异常，由 AlertDispatcher 统一捕获并转为 DeliveryFailed
    - channel() 用于日志与失败留痕
    """

    def channel(self) -> str: ...

    def send(self, recipient_id: str, text: str, *, parse_mode: str | None = None) -> None: ...
