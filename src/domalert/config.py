from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ConfigError
from .models import EventKind


CURSOR_POLICIES = ("always_advance", "hold_on_failure")


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_bool(d: Mapping[str, Any], key: str, default: bool) -> bool:
    v = d.get(key, default)
    return bool(v)


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    return list(default)


@dataclass(frozen=True, slots=True)
class FeedConfig:
    """
    上游 feed 配置。

    api_key_env:
      - API Key 的环境变量名（只从环境变量读取，不落盘）
    limit:
      - 单次拉取的页大小上限（正整数）
    cursor_key:
      - cursor 在状态库中的键
    """

    url: str = "https://api-testnet.doma.xyz/v1/poll"
    api_key_env: str | None = "DOMA_API_KEY"
    limit: int = 100
    cursor_key: str = "doma:events"


@dataclass(frozen=True, slots=True)
class TelegramConfig:
    bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    parse_mode: str | None = "Markdown"
    api_base: str = "https://api.telegram.org"


@dataclass(frozen=True, slots=True)
class DeliveryConfig:
    """
    投递配置。

    cursor_policy:
      - always_advance：无论投递是否失败都推进 cursor（至多一次）
      - hold_on_failure：遇到投递失败的事件即停止推进（至少一次，可能重复提醒）
    max_workers:
      - 单条事件内对多个订阅者并发发送的上限；1 表示串行
    """

    cursor_policy: str = "always_advance"
    max_workers: int = 4
    dry_run: bool = False
    alertable_kinds: tuple[EventKind, ...] = (EventKind.LISTED, EventKind.PURCHASED)


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    poll_interval_seconds:
      - 轮询间隔（daemon 模式下生效；once 模式由外部调度器决定节奏）
    sqlite_path:
      - SQLite 状态库路径（cursor/订阅/失败留痕）
    """

    poll_interval_seconds: int
    sqlite_path: str
    feed: FeedConfig
    telegram: TelegramConfig
    delivery: DeliveryConfig

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)


_FEED_DEFAULTS = FeedConfig()
_TELEGRAM_DEFAULTS = TelegramConfig()
_DELIVERY_DEFAULTS = DeliveryConfig()


def _parse_kinds(values: list[str]) -> tuple[EventKind, ...]:
    kinds: list[EventKind] = []
    for v in values:
        try:
            kind = EventKind(v.strip().upper())
        except ValueError as e:
            raise ConfigError(f"Unknown alertable kind at $.delivery.alertable_kinds: {v!r}") from e
        if kind is EventKind.OTHER:
            raise ConfigError("OTHER is not an alertable kind")
        kinds.append(kind)
    return tuple(kinds)


def parse_config(raw: Any) -> AppConfig:
    root = _require_dict(raw, where="$")
    poll_interval_seconds = _get_int(root, "poll_interval_seconds", 60)

    state = _require_dict(root.get("state", {}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./domalert_state.sqlite3")

    fd = _require_dict(root.get("feed", {}), where="$.feed")
    feed = FeedConfig(
        url=str(fd.get("url") or _FEED_DEFAULTS.url),
        api_key_env=_get_str(fd, "api_key_env", _FEED_DEFAULTS.api_key_env),
        limit=_get_int(fd, "limit", _FEED_DEFAULTS.limit),
        cursor_key=str(fd.get("cursor_key") or _FEED_DEFAULTS.cursor_key),
    )
    if feed.limit <= 0:
        raise ConfigError(f"$.feed.limit must be a positive integer, got {feed.limit}")

    tg = _require_dict(root.get("telegram", {}), where="$.telegram")
    telegram = TelegramConfig(
        bot_token_env=str(tg.get("bot_token_env") or _TELEGRAM_DEFAULTS.bot_token_env),
        parse_mode=_get_str(tg, "parse_mode", _TELEGRAM_DEFAULTS.parse_mode) or None,
        api_base=str(tg.get("api_base") or _TELEGRAM_DEFAULTS.api_base),
    )

    dl = _require_dict(root.get("delivery", {}), where="$.delivery")
    cursor_policy = str(dl.get("cursor_policy") or _DELIVERY_DEFAULTS.cursor_policy)
    if cursor_policy not in CURSOR_POLICIES:
        raise ConfigError(f"$.delivery.cursor_policy must be one of {CURSOR_POLICIES}, got {cursor_policy!r}")
    kinds = _get_str_list(dl, "alertable_kinds", [k.value for k in _DELIVERY_DEFAULTS.alertable_kinds])
    delivery = DeliveryConfig(
        cursor_policy=cursor_policy,
        max_workers=max(1, _get_int(dl, "max_workers", _DELIVERY_DEFAULTS.max_workers)),
        dry_run=_get_bool(dl, "dry_run", False),
        alertable_kinds=_parse_kinds(kinds),
    )

    return AppConfig(
        poll_interval_seconds=poll_interval_seconds,
        sqlite_path=sqlite_path,
        feed=feed,
        telegram=telegram,
        delivery=delivery,
    )


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式，避免引入第三方 YAML 解析依赖。

    JSON 顶层结构（示意）：
    {
      "poll_interval_seconds": 60,
      "state": { "sqlite_path": "./domalert_state.sqlite3" },
      "feed": { "url": "...", "api_key_env": "DOMA_API_KEY", "limit": 100 },
      "telegram": { "bot_token_env": "TELEGRAM_BOT_TOKEN", "parse_mode": "Markdown" },
      "delivery": { "cursor_policy": "always_advance", "max_workers": 4, "dry_run": false }
    }
    """
    with open(config_path, "rb") as f:
        raw = json.loads(f.read().decode("utf-8"))
    return parse_config(raw)
