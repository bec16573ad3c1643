"""Cookie セッションの保持とローテーション."""

from __future__ import annotations

import logging
import time
from typing import Callable, Mapping

from rank_collector.config import SESSION_TIMEOUT

logger = logging.getLogger(__name__)


class SessionState:
    """Cookie jar とその経過時間を管理する.

    プロセスローカル。ジョブ間で共有しないこと。
    """

    def __init__(
        self,
        timeout: float = SESSION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._cookies: dict[str, str] = {}
        self._started_at = clock()

    def current(self) -> dict[str, str]:
        return dict(self._cookies)

    def cookie_header(self) -> str | None:
        if not self._cookies:
            return None
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    def update(self, cookies: Mapping[str, str]) -> None:
        """レスポンスの Set-Cookie を取り込む."""
        if not cookies:
            return
        self._cookies.update(cookies)

    def is_stale(self) -> bool:
        return self._clock() - self._started_at > self._timeout

    def rotate(self) -> None:
        self._cookies.clear()
        self._started_at = self._clock()
        logger.info("セッションをローテーションしました")
