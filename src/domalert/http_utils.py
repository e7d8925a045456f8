from __future__ import annotations

import http.client
import json
import random
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping


RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），用于拉取 feed 与调用消息渠道 API。

    策略：
    - GET 对 429/5xx 与网络错误做有限次退避重试
    - POST 默认不重试（sendMessage 非幂等，重试可能造成重复消息）
    - 统一超时、User-Agent
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "domalert/0",
        max_retries: int = 3,
        base_backoff_seconds: float = 0.8,
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._max_retries = max_retries
        self._base_backoff_seconds = base_backoff_seconds
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self._request("GET", url, headers=headers, data=None, max_retries=self._max_retries)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
        max_retries: int = 0,
    ) -> HttpResponse:
        """
        以 JSON body 发起 POST。

        HTTP 4xx/5xx 不抛异常而是原样返回 response，由调用方根据渠道协议判定
        （例如 Telegram 的错误体里带 description）。
        """
        request_headers = {
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(dict(headers))
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        try:
            return self._request("POST", url, headers=request_headers, data=data, max_retries=max_retries)
        except urllib.error.HTTPError as e:
            return HttpResponse(
                status=e.code,
                url=url,
                headers={k: v for k, v in (e.headers or {}).items()},
                body=e.read() or b"",
            )

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None,
        data: bytes | None,
        max_retries: int,
    ) -> HttpResponse:
        request_headers = {"User-Agent": self._user_agent}
        if headers:
            request_headers.update(dict(headers))

        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                req = urllib.request.Request(url=url, headers=request_headers, data=data, method=method)
                with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:
                    resp_headers = {k: v for k, v in resp.headers.items()}
                    return HttpResponse(
                        status=getattr(resp, "status", 200),
                        url=resp.geturl(),
                        headers=resp_headers,
                        body=resp.read(),
                    )
            except urllib.error.HTTPError as e:
                last_error = e
                retry = e.code in RETRYABLE_STATUS
                if (not retry) or attempt >= max_retries:
                    raise
            except (urllib.error.URLError, http.client.HTTPException, TimeoutError) as e:
                last_error = e
                if attempt >= max_retries:
                    raise

            backoff = self._base_backoff_seconds * (2**attempt)
            jitter = random.random() * 0.25 * backoff
            time.sleep(backoff + jitter)

        assert last_error is not None
        raise last_error


def with_query_params(url: str, params: Mapping[str, str]) -> str:
    parsed = urllib.parse.urlparse(url)
    q = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
    q.update({k: v for k, v in params.items() if v is not None})
    new_query = urllib.parse.urlencode(q)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))


def redact_url(url: str, secret: str | None) -> str:
    if secret and secret in url:
        return url.replace(secret, "***")
    return url
