"""Supabase データベース操作モジュール.

スケジューラが依存する永続化・通知の契約をここで実装する。
テーブルは public スキーマ (tracking_jobs, position_history,
proxy_configurations, api_requests)。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from supabase import Client, create_client

from rank_collector.config import SUPABASE_SECRET_KEY, SUPABASE_URL
from rank_collector.models import (
    CompetitionLevel,
    JobStatus,
    PositionSample,
    ProxyEndpoint,
    ProxyTestResult,
    TrackingFrequency,
    TrackingJob,
)
from rank_collector.proxy_pool import endpoint_from_config

logger = logging.getLogger(__name__)

_client: Client | None = None


def _get_client() -> Client:
    """Supabase クライアントを遅延生成する."""
    global _client
    if _client is None:
        if not SUPABASE_URL or not SUPABASE_SECRET_KEY:
            raise RuntimeError("SUPABASE_URL / SUPABASE_SECRET_KEY が設定されていません")
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


def _table(name: str):
    return _get_client().table(name)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _job_from_row(row: dict) -> TrackingJob:
    # keywords は重複を除き、順序は保持する
    keywords = list(dict.fromkeys(k for k in row.get("keywords") or [] if k))
    return TrackingJob(
        id=row["id"],
        user_id=row["user_id"],
        asin=row["asin"],
        marketplace=row.get("marketplace") or "US",
        keywords=keywords,
        tracking_frequency=TrackingFrequency(row.get("tracking_frequency") or "daily"),
        random_delay_min=row.get("random_delay_min"),
        random_delay_max=row.get("random_delay_max"),
        status=JobStatus(row.get("status") or "active"),
        last_run_at=_parse_ts(row.get("last_tracked_at")),
        next_run_at=_parse_ts(row.get("next_tracking_at")),
    )


def _sample_from_row(row: dict) -> PositionSample:
    return PositionSample(
        organic_position=row.get("organic_position"),
        sponsored_position=row.get("sponsored_position"),
        search_volume_estimate=row.get("search_volume"),
        competition_level=CompetitionLevel(row.get("competition_level") or "unknown"),
        tracked_at=_parse_ts(row["tracked_at"]),
    )


def load_due_jobs(limit: int) -> list[TrackingJob]:
    """実行期限が来ている active なジョブを最大 limit 件取得する."""
    now = datetime.now(timezone.utc).isoformat()
    resp = (
        _table("tracking_jobs")
        .select("*")
        .eq("status", JobStatus.ACTIVE.value)
        .or_(f"next_tracking_at.is.null,next_tracking_at.lte.{now}")
        .limit(limit)
        .execute()
    )
    return [_job_from_row(row) for row in resp.data]


def load_active_jobs() -> list[TrackingJob]:
    """集計対象となる active なジョブを全件取得する."""
    resp = (
        _table("tracking_jobs")
        .select("*")
        .eq("status", JobStatus.ACTIVE.value)
        .execute()
    )
    return [_job_from_row(row) for row in resp.data]


def append_position_sample(job_id: str, keyword: str, sample: PositionSample) -> None:
    """順位履歴に 1 件追記する (追記のみ・更新はしない)."""
    _table("position_history").insert({
        "tracking_job_id": job_id,
        "keyword": keyword,
        "organic_position": sample.organic_position,
        "sponsored_position": sample.sponsored_position,
        "search_volume": sample.search_volume_estimate,
        "competition_level": sample.competition_level.value,
        "tracked_at": sample.tracked_at.isoformat(),
    }).execute()


def load_position_history(job_id: str, keyword: str, since: datetime | None = None) -> list[PositionSample]:
    """(ジョブ, キーワード) の順位履歴を新しい順に取得する."""
    query = (
        _table("position_history")
        .select("*")
        .eq("tracking_job_id", job_id)
        .eq("keyword", keyword)
    )
    if since is not None:
        query = query.gte("tracked_at", since.isoformat())
    resp = query.order("tracked_at", desc=True).execute()
    return [_sample_from_row(row) for row in resp.data]


def update_job_schedule(
    job_id: str,
    last_run_at: datetime | None,
    next_run_at: datetime | None,
    status: JobStatus,
) -> None:
    _table("tracking_jobs").update({
        "last_tracked_at": _iso(last_run_at),
        "next_tracking_at": _iso(next_run_at),
        "status": status.value,
    }).eq("id", job_id).execute()
    logger.info("ジョブ更新: id=%s, status=%s, next=%s", job_id, status.value, _iso(next_run_at))


def load_enabled_proxies(user_id: str) -> list[ProxyEndpoint]:
    """ユーザーの有効なプロキシ設定を取得する."""
    resp = (
        _table("proxy_configurations")
        .select("provider_id, configuration")
        .eq("user_id", user_id)
        .execute()
    )
    endpoints = []
    for row in resp.data:
        endpoint = endpoint_from_config(row["provider_id"], row.get("configuration"))
        if endpoint is not None:
            endpoints.append(endpoint)
    return endpoints


def load_all_proxy_configurations() -> list[tuple[str, str, ProxyEndpoint]]:
    """全ユーザーの有効なプロキシを (user_id, provider_id, endpoint) で返す."""
    resp = _table("proxy_configurations").select("user_id, provider_id, configuration").execute()
    results = []
    for row in resp.data:
        endpoint = endpoint_from_config(row["provider_id"], row.get("configuration"))
        if endpoint is not None:
            results.append((row["user_id"], row["provider_id"], endpoint))
    return results


def save_proxy_test_result(user_id: str, provider_id: str, result: ProxyTestResult) -> None:
    _table("proxy_configurations").update({
        "last_test_result": {
            "success": result.success,
            "message": result.message,
            "latency": result.latency,
            "tested_at": _iso(result.tested_at),
        },
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }).eq("user_id", user_id).eq("provider_id", provider_id).execute()


def record_api_request(
    job_id: str,
    keyword: str,
    marketplace: str,
    success: bool,
    error_message: str | None,
    elapsed_ms: int,
    user_agent: str | None,
) -> None:
    """検索リクエストの監査ログを 1 件記録する."""
    _table("api_requests").insert({
        "tracking_job_id": job_id,
        "keyword": keyword,
        "marketplace": marketplace,
        "success": success,
        "error_message": error_message,
        "response_time_ms": elapsed_ms,
        "user_agent": user_agent,
    }).execute()


def notify(user_id: str, kind: str, payload: dict) -> None:
    """通知サービス (Edge Function) を呼び出す."""
    _get_client().functions.invoke(
        "notification-service",
        invoke_options={"body": {"type": kind, "userId": user_id, "data": payload}},
    )
