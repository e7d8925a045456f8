from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import SubscriberResolutionFailed
from ..models import normalize_domain
from ..state.store import SubscriptionStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubscriberResolver:
    """
    域名 -> 订阅者集合。

    每个轮询周期新建一个实例：同一周期内按唯一域名缓存查询结果，
    避免同一域名多次出现时重复查询存储；跨周期不共享任何状态。
    """

    store: SubscriptionStore
    _cache: dict[str, frozenset[str]] = field(default_factory=dict)
    failures: int = 0

    def resolve(self, domain: str) -> frozenset[str]:
        key = normalize_domain(domain)
        if key in self._cache:
            return self._cache[key]
        try:
            subscribers = self._lookup(key)
        except SubscriberResolutionFailed as e:
            self.failures += 1
            logger.warning("subscriber resolution failed: domain=%s error=%s", key, e)
            subscribers = frozenset()
        self._cache[key] = subscribers
        return subscribers

    def _lookup(self, domain: str) -> frozenset[str]:
        try:
            rows = self.store.find_by_domain(domain)
        except Exception as e:  # noqa: BLE001
            raise SubscriberResolutionFailed(domain, e) from e
        return frozenset(row.subscriber_id for row in rows)


def parse_watch_payload(payload: str) -> tuple[str, str]:
    """
    解析网站深链接中的订阅载荷：watch_<label>_<label>..._<username>。

    例：watch_crypto_ai_alice -> ("crypto.ai", "alice")
    """
    parts = (payload or "").strip().split("_")
    if len(parts) < 4 or parts[0] != "watch" or not all(parts[1:]):
        raise ValueError(f"invalid watch payload: {payload!r}")
    domain = ".".join(parts[1:-1])
    return normalize_domain(domain), parts[-1]
