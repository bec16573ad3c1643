"""db モジュールのモックテスト."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from rank_collector.models import (
    CompetitionLevel,
    JobStatus,
    PositionSample,
    ProxyTestResult,
    TrackingFrequency,
)

TRACKED_AT = datetime(2026, 2, 27, tzinfo=timezone.utc)


def _chain(data=None):
    """Supabase のクエリビルダー (メソッドチェーン) を模したモック."""
    mock_chain = MagicMock()
    for name in ("select", "insert", "update", "eq", "or_", "gte", "order", "limit"):
        getattr(mock_chain, name).return_value = mock_chain
    mock_chain.execute.return_value = MagicMock(data=data or [])
    return mock_chain


class TestLoadDueJobs:
    """load_due_jobs のテスト."""

    @patch("rank_collector.db._table")
    def test_query_and_mapping(self, mock_table):
        from rank_collector.db import load_due_jobs

        mock_chain = _chain([{
            "id": "job-1",
            "user_id": "user-1",
            "asin": "B08N5WRWNW",
            "marketplace": "UK",
            "keywords": ["a", "b", "a", ""],
            "tracking_frequency": "every_6_hours",
            "random_delay_min": 2,
            "random_delay_max": 5,
            "status": "active",
            "last_tracked_at": "2026-02-27T00:00:00+00:00",
            "next_tracking_at": None,
        }])
        mock_table.return_value = mock_chain

        jobs = load_due_jobs(50)

        mock_table.assert_called_once_with("tracking_jobs")
        mock_chain.eq.assert_called_once_with("status", "active")
        assert mock_chain.or_.call_args.args[0].startswith("next_tracking_at.is.null,next_tracking_at.lte.")
        mock_chain.limit.assert_called_once_with(50)

        job = jobs[0]
        assert job.keywords == ["a", "b"]
        assert job.tracking_frequency == TrackingFrequency.EVERY_6_HOURS
        assert job.last_run_at == TRACKED_AT
        assert job.next_run_at is None


class TestLoadActiveJobs:
    """load_active_jobs のテスト."""

    @patch("rank_collector.db._table")
    def test_query(self, mock_table):
        from rank_collector.db import load_active_jobs

        mock_chain = _chain([{"id": "job-1", "user_id": "user-1", "asin": "B08N5WRWNW", "keywords": ["a"]}])
        mock_table.return_value = mock_chain

        jobs = load_active_jobs()

        mock_table.assert_called_once_with("tracking_jobs")
        mock_chain.eq.assert_called_once_with("status", "active")
        mock_chain.or_.assert_not_called()
        assert [j.id for j in jobs] == ["job-1"]
        assert jobs[0].marketplace == "US"


class TestAppendPositionSample:
    """append_position_sample のテスト."""

    @patch("rank_collector.db._table")
    def test_insert_record(self, mock_table):
        from rank_collector.db import append_position_sample

        mock_chain = _chain()
        mock_table.return_value = mock_chain

        sample = PositionSample(
            organic_position=3,
            sponsored_position=None,
            search_volume_estimate=200,
            competition_level=CompetitionLevel.LOW,
            tracked_at=TRACKED_AT,
        )
        append_position_sample("job-1", "wireless headphones", sample)

        mock_table.assert_called_once_with("position_history")
        mock_chain.insert.assert_called_once_with({
            "tracking_job_id": "job-1",
            "keyword": "wireless headphones",
            "organic_position": 3,
            "sponsored_position": None,
            "search_volume": 200,
            "competition_level": "low",
            "tracked_at": "2026-02-27T00:00:00+00:00",
        })


class TestLoadPositionHistory:
    """load_position_history のテスト."""

    @patch("rank_collector.db._table")
    def test_mapping(self, mock_table):
        from rank_collector.db import load_position_history

        mock_chain = _chain([{
            "organic_position": None,
            "sponsored_position": 2,
            "search_volume": None,
            "competition_level": None,
            "tracked_at": "2026-02-27T00:00:00Z",
        }])
        mock_table.return_value = mock_chain

        history = load_position_history("job-1", "kw", since=TRACKED_AT)

        mock_chain.gte.assert_called_once_with("tracked_at", TRACKED_AT.isoformat())
        mock_chain.order.assert_called_once_with("tracked_at", desc=True)
        assert history[0].sponsored_position == 2
        assert history[0].competition_level == CompetitionLevel.UNKNOWN
        assert history[0].tracked_at == TRACKED_AT


class TestUpdateJobSchedule:
    """update_job_schedule のテスト."""

    @patch("rank_collector.db._table")
    def test_failed(self, mock_table):
        from rank_collector.db import update_job_schedule

        mock_chain = _chain()
        mock_table.return_value = mock_chain

        update_job_schedule("job-1", TRACKED_AT, None, JobStatus.FAILED)

        mock_chain.update.assert_called_once_with({
            "last_tracked_at": "2026-02-27T00:00:00+00:00",
            "next_tracking_at": None,
            "status": "failed",
        })
        mock_chain.eq.assert_called_once_with("id", "job-1")


class TestProxies:
    """プロキシ設定の読み書きのテスト."""

    @patch("rank_collector.db._table")
    def test_load_enabled_proxies(self, mock_table):
        from rank_collector.db import load_enabled_proxies

        mock_table.return_value = _chain([
            {"provider_id": "on", "configuration": {"enabled": True, "endpoint": "a.example.com", "port": 80}},
            {"provider_id": "off", "configuration": {"enabled": False, "endpoint": "b.example.com"}},
        ])

        endpoints = load_enabled_proxies("user-1")

        assert [e.provider_id for e in endpoints] == ["on"]

    @patch("rank_collector.db._table")
    def test_save_proxy_test_result(self, mock_table):
        from rank_collector.db import save_proxy_test_result

        mock_chain = _chain()
        mock_table.return_value = mock_chain

        save_proxy_test_result("user-1", "p1", ProxyTestResult(success=False, message="timeout"))

        payload = mock_chain.update.call_args.args[0]
        assert payload["last_test_result"]["message"] == "timeout"
        assert mock_chain.eq.call_count == 2


class TestClient:
    """クライアント生成のテスト."""

    @patch("rank_collector.db.SUPABASE_URL", "")
    @patch("rank_collector.db._client", None)
    def test_missing_credentials(self):
        from rank_collector.db import _get_client

        with pytest.raises(RuntimeError):
            _get_client()

    @patch("rank_collector.db._get_client")
    def test_notify(self, mock_get_client):
        from rank_collector.db import notify

        notify("user-1", "tracking_complete", {"jobId": "job-1"})

        mock_get_client.return_value.functions.invoke.assert_called_once_with(
            "notification-service",
            invoke_options={"body": {
                "type": "tracking_complete", "userId": "user-1", "data": {"jobId": "job-1"},
            }},
        )
