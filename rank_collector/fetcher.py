"""検索ページ取得: 偽装・リトライ・ブロック判定.

1 回の論理的な取得 (fetch) は以下の状態を遷移する:
  Attempting → Succeeded | Blocked | TransientError → Retry | GiveUp

想定内の失敗 (ブロック・通信エラー) は例外にせず FetchOutcome として返す。
"""

from __future__ import annotations

import dataclasses
import logging
import random
import time
from typing import Callable
from urllib.parse import urlparse

import requests

from rank_collector.config import (
    BACKOFF_BASE_MS,
    BACKOFF_CAP_MS,
    BACKOFF_JITTER_MS,
    BLOCK_SIGNATURES,
    BLOCK_STATUS_CODES,
    MAX_RETRIES,
    REQUEST_TIMEOUT,
)
from rank_collector.identity import IdentityRotator
from rank_collector.models import FetchOutcome, OutcomeKind
from rank_collector.proxy_pool import ProxyPool, to_requests_proxies
from rank_collector.session import SessionState

logger = logging.getLogger(__name__)


def find_block_signature(body: str, signatures: tuple[str, ...] = BLOCK_SIGNATURES) -> str | None:
    """CAPTCHA / ロボット確認ページの文言を探す (大文字小文字は区別しない)."""
    lowered = body.lower()
    for signature in signatures:
        if signature.lower() in lowered:
            return signature
    return None


def classify_response(status_code: int, body: str) -> FetchOutcome:
    """HTTP レスポンスを Success / Blocked / TransientError に分類する.

    本文にブロック文言があればステータスコードに関係なく Blocked。
    """
    signature = find_block_signature(body)
    if signature:
        return FetchOutcome.blocked(f"signature: {signature}", status_code=status_code)
    if status_code in BLOCK_STATUS_CODES:
        return FetchOutcome.blocked(f"HTTP {status_code}", status_code=status_code)
    if 200 <= status_code < 300:
        return FetchOutcome.success(body, status_code)
    return FetchOutcome.transient(f"HTTP {status_code}", status_code=status_code)


def backoff_seconds(attempt: int, rng: random.Random) -> float:
    """指数バックオフ + ジッター (attempt は 0 始まり)."""
    delay_ms = min(BACKOFF_BASE_MS * 2 ** attempt, BACKOFF_CAP_MS)
    return (delay_ms + rng.uniform(0, BACKOFF_JITTER_MS)) / 1000


class RequestExecutor:
    """1 スケジューリング単位ごとに生成する取得器.

    Args:
        identity: User-Agent / ヘッダー生成
        session: Cookie セッション (ジョブごとに独立)
        proxy_pool: None または空なら直接接続
        max_retries: 最大試行回数
        timeout: 1 試行あたりのタイムアウト秒数
        rng: バックオフのジッター用乱数源
        sleep: 待機関数 (テストで差し替える)
    """

    def __init__(
        self,
        identity: IdentityRotator | None = None,
        session: SessionState | None = None,
        proxy_pool: ProxyPool | None = None,
        max_retries: int = MAX_RETRIES,
        timeout: float = REQUEST_TIMEOUT,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1: {max_retries}")
        self._rng = rng or random.Random()
        self.identity = identity or IdentityRotator(rng=self._rng)
        self.session = session or SessionState()
        self.proxy_pool = proxy_pool
        self._max_retries = max_retries
        self._timeout = timeout
        self._sleep = sleep
        self._degraded_logged = False

    def fetch(self, url: str) -> FetchOutcome:
        """URL を取得する. 不正な URL の場合のみ ValueError を送出する."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"不正な URL: {url!r}")

        if self.session.is_stale():
            logger.info("セッションの有効期限切れ")
            self.session.rotate()

        outcome: FetchOutcome | None = None
        for attempt in range(self._max_retries):
            if attempt > 0:
                self._sleep(self.identity.minimum_interval())

            outcome = self._attempt(url, attempt)

            if outcome.kind == OutcomeKind.SUCCESS:
                logger.info("取得成功: %s (試行 %d 回目, %d bytes)", url, attempt + 1, len(outcome.body or ""))
                return outcome

            if outcome.kind == OutcomeKind.BLOCKED:
                logger.warning("ブロック検知: %s (試行 %d 回目, %s)", url, attempt + 1, outcome.reason)
                self.session.rotate()
            else:
                logger.warning("一時エラー: %s (試行 %d 回目, %s)", url, attempt + 1, outcome.reason)

            if attempt < self._max_retries - 1:
                self._sleep(backoff_seconds(attempt, self._rng))

        logger.error(
            "リトライ上限到達: %s (%s, %s)", url, outcome.kind.value, outcome.reason,
        )
        return outcome

    def _attempt(self, url: str, attempt: int) -> FetchOutcome:
        identity = self.identity.next_identity()
        headers = dict(identity.headers)
        cookie = self.session.cookie_header()
        if cookie:
            headers["Cookie"] = cookie

        proxy = self.proxy_pool.next() if self.proxy_pool is not None else None
        if proxy is None and not self._degraded_logged:
            logger.warning("利用可能なプロキシがありません。直接接続で取得します")
            self._degraded_logged = True
        logger.debug(
            "試行 %d: %s via %s, UA=%s",
            attempt + 1, url, proxy.provider_id if proxy else "direct", identity.user_agent,
        )

        meta = {"attempts": attempt + 1, "user_agent": identity.user_agent}
        try:
            resp = requests.get(
                url,
                headers=headers,
                proxies=to_requests_proxies(proxy),
                timeout=self._timeout,
                allow_redirects=True,
            )
        except requests.Timeout:
            return FetchOutcome.transient("timeout", **meta)
        except requests.RequestException as e:
            return FetchOutcome.transient(f"{type(e).__name__}: {e}", **meta)

        outcome = dataclasses.replace(classify_response(resp.status_code, resp.text), **meta)
        if outcome.kind == OutcomeKind.SUCCESS:
            self.session.update(requests.utils.dict_from_cookiejar(resp.cookies))
        return outcome
