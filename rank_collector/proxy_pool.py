"""上流プロキシのラウンドロビン管理と疎通テスト."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from urllib.parse import quote

import requests

from rank_collector.config import DEFAULT_PROXY_ZONES, PROXY_TEST_TIMEOUT, PROXY_TEST_URL, USER_AGENTS
from rank_collector.models import ProxyEndpoint, ProxyTestResult

logger = logging.getLogger(__name__)


def proxy_url(endpoint: ProxyEndpoint) -> str:
    """requests に渡すプロキシ URL を組み立てる.

    認証情報があれば URL に埋め込む (requests が Basic 認証ヘッダーに変換する)。
    """
    host = endpoint.host
    if "://" in host:
        host = host.split("://", 1)[1]
    netloc = f"{host}:{endpoint.port}" if endpoint.port else host
    if endpoint.username and endpoint.password:
        creds = f"{quote(endpoint.username, safe='')}:{quote(endpoint.password, safe='')}"
        netloc = f"{creds}@{netloc}"
    return f"http://{netloc}"


def to_requests_proxies(endpoint: ProxyEndpoint | None) -> dict[str, str] | None:
    if endpoint is None:
        return None
    url = proxy_url(endpoint)
    return {"http": url, "https": url}


def endpoint_from_config(provider_id: str, configuration: dict | None) -> ProxyEndpoint | None:
    """proxy_configurations.configuration (JSON) を ProxyEndpoint に変換する.

    無効化されているもの・endpoint 未設定のものは None。
    """
    configuration = configuration or {}
    if not configuration.get("enabled") or not configuration.get("endpoint"):
        return None

    port = configuration.get("port")
    zones_raw = configuration.get("zones") or ""
    zones = [z.strip().upper() for z in str(zones_raw).split(",") if z.strip()]
    return ProxyEndpoint(
        provider_id=provider_id,
        host=configuration["endpoint"],
        port=int(port) if port not in (None, "") else None,
        username=configuration.get("username") or None,
        password=configuration.get("password") or None,
        enabled=True,
        zones=zones or list(DEFAULT_PROXY_ZONES),
    )


class ProxyPool:
    """有効なプロキシをラウンドロビンで払い出す.

    メンバーはスケジューリングサイクルの開始時にのみ入れ替える (refresh)。
    空の場合 next() は None を返し、呼び出し側は直接接続にフォールバックする。
    """

    def __init__(
        self,
        endpoints: list[ProxyEndpoint] | None = None,
        regions: set[str] | None = None,
    ) -> None:
        self._regions = {r.upper() for r in regions} if regions else None
        self._endpoints: list[ProxyEndpoint] = []
        self._index = 0
        self.refresh(endpoints or [])

    def refresh(self, endpoints: list[ProxyEndpoint]) -> None:
        enabled = [e for e in endpoints if e.enabled]
        if self._regions:
            matched = [e for e in enabled if self._regions & {z.upper() for z in e.zones}]
            # 対象リージョンに対応するものが無ければ全件を使う
            enabled = matched or enabled
        self._endpoints = enabled
        self._index = 0
        logger.info("プロキシプール更新: %d 件", len(self._endpoints))

    def next(self) -> ProxyEndpoint | None:
        if not self._endpoints:
            return None
        endpoint = self._endpoints[self._index % len(self._endpoints)]
        self._index = (self._index + 1) % len(self._endpoints)
        return endpoint

    def test(self, endpoint: ProxyEndpoint, timeout: float = PROXY_TEST_TIMEOUT) -> ProxyTestResult:
        """既知の疎通先にプロキシ経由でリクエストし結果を返す.

        タイムアウトは例外にせず message="timeout" の失敗として返す。
        """
        tested_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            resp = requests.get(
                PROXY_TEST_URL,
                headers={"User-Agent": USER_AGENTS[0]},
                proxies=to_requests_proxies(endpoint),
                timeout=timeout,
            )
        except requests.Timeout:
            logger.warning("プロキシテスト タイムアウト: %s", endpoint.provider_id)
            return ProxyTestResult(success=False, message="timeout", tested_at=tested_at)
        except requests.RequestException as e:
            logger.warning("プロキシテスト 失敗: %s, error=%s", endpoint.provider_id, e)
            return ProxyTestResult(
                success=False, message=f"Connection failed: {e}", tested_at=tested_at,
            )

        latency = time.monotonic() - started
        if resp.ok:
            logger.info("プロキシテスト 成功: %s (%.2f 秒)", endpoint.provider_id, latency)
            return ProxyTestResult(
                success=True,
                message=f"Connection successful via {endpoint.provider_id}",
                latency=latency,
                tested_at=tested_at,
            )
        return ProxyTestResult(
            success=False,
            message=f"HTTP {resp.status_code}: {resp.reason}",
            latency=latency,
            tested_at=tested_at,
        )
