import json
import socket
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import pytest

from domalert.config import parse_config
from domalert.runner import build_runner
from domalert.state.sqlite_store import SqliteStateStore


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class _CaptureState:
    """
    跨线程共享：feed 的返回内容、收到的 sendMessage 请求、需要模拟拉黑的 chat_id。
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.feed_status = 200
        self.feed_events: list[dict] = []
        self.feed_requests: list[dict[str, Any]] = []
        self.messages: list[dict] = []
        self.blocked: set[str] = set()

    def add_message(self, payload: dict) -> None:
        with self.lock:
            self.messages.append(payload)


class _Handler(BaseHTTPRequestHandler):
    """
    本地模拟服务：
    - GET /v1/poll?limit=N：校验 Api-Key，返回 {"events": [...]}
    - POST /bot<token>/sendMessage：按 Telegram 约定返回 ok=true，或对被拉黑的 chat 返回 403
    """

    capture: _CaptureState

    def _send_json(self, status: int, obj: Any) -> None:
        body = json.dumps(obj, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != "/v1/poll":
            self._send_json(404, {"message": "not found"})
            return
        qs = urllib.parse.parse_qs(parsed.query)
        self.capture.feed_requests.append({"limit": qs.get("limit"), "api_key": self.headers.get("Api-Key")})
        if self.headers.get("Api-Key") != "feed-key":
            self._send_json(401, {"message": "unauthorized"})
            return
        if self.capture.feed_status != 200:
            self._send_json(self.capture.feed_status, {"message": "unavailable"})
            return
        self._send_json(200, {"events": self.capture.feed_events})

    def do_POST(self) -> None:  # noqa: N802
        content_len = int(self.headers.get("Content-Length") or "0")
        payload = json.loads(self.rfile.read(content_len).decode("utf-8"))
        if self.path != "/bottest-token/sendMessage":
            self._send_json(404, {"ok": False, "error_code": 404, "description": "Not Found"})
            return
        chat_id = str(payload.get("chat_id"))
        if chat_id in self.capture.blocked:
            self._send_json(403, {"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"})
            return
        self.capture.add_message(payload)
        self._send_json(200, {"ok": True, "result": {"message_id": len(self.capture.messages)}})

    def log_message(self, format, *args) -> None:  # noqa: A002, ANN001
        return


@pytest.fixture()
def local_server():  # noqa: ANN201
    capture = _CaptureState()
    port = _find_free_port()
    handler = type("Handler", (_Handler,), {"capture": capture})
    server = HTTPServer(("127.0.0.1", port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield {"base": f"http://127.0.0.1:{port}", "capture": capture}
    finally:
        server.shutdown()
        server.server_close()


def _build(local_server, tmp_path, monkeypatch):  # noqa: ANN001, ANN202
    monkeypatch.setenv("DOMALERT_IT_FEED_KEY", "feed-key")
    monkeypatch.setenv("DOMALERT_IT_BOT", "test-token")
    config = parse_config(
        {
            "state": {"sqlite_path": str(tmp_path / "state.sqlite3")},
            "feed": {"url": f"{local_server['base']}/v1/poll", "api_key_env": "DOMALERT_IT_FEED_KEY", "limit": 100},
            "telegram": {"bot_token_env": "DOMALERT_IT_BOT", "api_base": local_server["base"]},
            "delivery": {"max_workers": 2},
        }
    )
    runner = build_runner(config)
    runner.source.http._max_retries = 0  # noqa: SLF001
    return runner, SqliteStateStore(config.sqlite_path)


def test_feed_to_telegram_round_trip(local_server, tmp_path, monkeypatch) -> None:  # noqa: ANN001
    """
    端到端：
    - 上游：真实 HTTP GET 本地 feed（带 Api-Key 与 limit）
    - 下游：真实 HTTP POST sendMessage；一个订阅者被拉黑，另一个正常收到
    - cursor 真实落库，第二次运行不再重复发送
    """
    capture = local_server["capture"]
    capture.feed_events = [
        {"id": 2, "type": "NAME_RENEWED", "name": "crypto.ai"},
        {
            "id": 1,
            "type": "TOKEN_LISTED",
            "name": "crypto.ai",
            "eventData": {"payment": {"price": 5_000_000, "currencySymbol": "USDC"}},
        },
    ]
    capture.blocked = {"666"}

    runner, store = _build(local_server, tmp_path, monkeypatch)
    store.ensure_schema()
    store.create("1001", "crypto.ai")
    store.create("666", "crypto.ai")

    report = runner.run_once()
    assert report.status == "partial"
    assert report.notify_successes == 1
    assert report.notify_failures == 1
    assert store.get_cursor("doma:events") == 2
    assert capture.feed_requests[0] == {"limit": ["100"], "api_key": "feed-key"}
    assert len(capture.messages) == 1
    msg = capture.messages[0]
    assert msg["chat_id"] == "1001"
    assert msg["parse_mode"] == "Markdown"
    assert "crypto.ai" in msg["text"] and "5 USDC" in msg["text"]

    report2 = runner.run_once()
    assert report2.status == "success"
    assert report2.events_new == 0
    assert len(capture.messages) == 1


def test_feed_error_status_fails_cycle(local_server, tmp_path, monkeypatch) -> None:  # noqa: ANN001
    capture = local_server["capture"]
    capture.feed_status = 500
    runner, store = _build(local_server, tmp_path, monkeypatch)

    report = runner.run_once()
    assert report.status == "failed"
    assert capture.messages == []
    assert store.get_cursor("doma:events") == 0
