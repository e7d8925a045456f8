from __future__ import annotations

import json
from dataclasses import dataclass

from ..http_utils import HttpClient, redact_url
from .base import MessageChannel


TELEGRAM_API_BASE = "https://api.telegram.org"


@dataclass(slots=True)
class TelegramChannel(MessageChannel):
    """
    Telegram Bot API sendMessage。

    说明：
    - 请求：POST {api_base}/bot<token>/sendMessage，JSON body 含 chat_id/text/parse_mode
    - 响应：{"ok": true, "result": {...}}；ok 不为 true 时带 error_code/description
    - 被拉黑（403）、限流（429）等都按单个接收者的失败处理，不在本周期内重试
    """

    bot_token: str
    http: HttpClient
    api_base: str = TELEGRAM_API_BASE
    disable_web_page_preview: bool = True

    def channel(self) -> str:
        return "telegram"

    def _url(self) -> str:
        return f"{self.api_base.rstrip('/')}/bot{self.bot_token}/sendMessage"

    def send(self, recipient_id: str, text: str, *, parse_mode: str | None = None) -> None:
        payload: dict[str, object] = {
            "chat_id": recipient_id,
            "text": text,
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        url = self._url()
        resp = self.http.post_json(url, payload)
        try:
            data = json.loads(resp.body.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise RuntimeError(
                f"Telegram sendMessage invalid JSON response: status={resp.status}, body={resp.body[:200]!r}"
            ) from e

        if resp.status >= 400 or not isinstance(data, dict) or data.get("ok") is not True:
            description = data.get("description") if isinstance(data, dict) else None
            raise RuntimeError(
                f"Telegram sendMessage failed: status={resp.status}, "
                f"description={description!r}, url={redact_url(url, self.bot_token)}"
            )
