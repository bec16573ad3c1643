"""User-Agent とヘッダーのローテーション."""

from __future__ import annotations

import random

from rank_collector.config import (
    ACCEPT_LANGUAGES,
    REQUEST_INTERVAL_MAX,
    REQUEST_INTERVAL_MIN,
    USER_AGENTS,
)
from rank_collector.models import Identity

_CHROMIUM_BRANDS = {
    "Edg/": '"Microsoft Edge";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
    "Chrome/": '"Google Chrome";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
}


def _platform_of(user_agent: str) -> str:
    if "Android" in user_agent:
        return "Android"
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Macintosh" in user_agent:
        return "macOS"
    return "Windows"


def _is_mobile(user_agent: str) -> bool:
    return "Mobile" in user_agent


def _client_hints(user_agent: str) -> dict[str, str]:
    """Chromium 系のみ Sec-CH-UA を送る (Firefox / Safari は送らない)."""
    if "Firefox/" in user_agent or "Chrome/" not in user_agent:
        return {}
    brand = next(v for k, v in _CHROMIUM_BRANDS.items() if k in user_agent)
    return {
        "Sec-CH-UA": brand,
        "Sec-CH-UA-Mobile": "?1" if _is_mobile(user_agent) else "?0",
        "Sec-CH-UA-Platform": f'"{_platform_of(user_agent)}"',
    }


class IdentityRotator:
    """リクエストごとにランダムなクライアント識別情報を生成する.

    状態は持たない。乱数源は注入可能 (テストで固定するため)。
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        user_agents: list[str] | None = None,
        interval_min: float = REQUEST_INTERVAL_MIN,
        interval_max: float = REQUEST_INTERVAL_MAX,
    ) -> None:
        if interval_min > interval_max:
            raise ValueError(f"interval_min > interval_max: {interval_min} > {interval_max}")
        self._rng = rng or random.Random()
        self._user_agents = list(user_agents or USER_AGENTS)
        self._interval_min = interval_min
        self._interval_max = interval_max

    def next_identity(self) -> Identity:
        user_agent = self._rng.choice(self._user_agents)
        return Identity(user_agent=user_agent, headers=self.build_headers(user_agent))

    def build_headers(self, user_agent: str) -> dict[str, str]:
        """User-Agent と矛盾しないヘッダーセットを組み立てる."""
        if "Firefox/" in user_agent:
            accept = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
        else:
            accept = (
                "text/html,application/xhtml+xml,application/xml;q=0.9,"
                "image/avif,image/webp,image/apng,*/*;q=0.8"
            )
        headers = {
            "User-Agent": user_agent,
            "Accept": accept,
            "Accept-Language": self._rng.choice(ACCEPT_LANGUAGES),
            "Accept-Encoding": "gzip, deflate, br",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Sec-Fetch-User": "?1",
            "Upgrade-Insecure-Requests": "1",
            "Connection": "keep-alive",
        }
        headers.update(_client_hints(user_agent))
        return headers

    def minimum_interval(self) -> float:
        """リクエスト間の最小待機秒数 (呼び出しごとに一様乱数で決定)."""
        return self._rng.uniform(self._interval_min, self._interval_max)
