"""追跡ジョブのスケジューラ.

処理フロー (1 サイクル):
  1. 実行期限が来た active ジョブを最大 JOB_BATCH_SIZE 件取得
  2. 処理順をランダムに並べ替える (実行順の固定化を避けるため)
  3. ユーザーごとのプロキシ設定をサイクル開始時に 1 回だけ読み込む
  4. ジョブ内の各キーワードを直列に取得・解析し、順位サンプルを追記
  5. 次回実行時刻を更新、想定外のエラーならジョブを failed にする
     成功したジョブは履歴から集計を作り直して完了通知に添える
  6. ジョブ間で 5〜15 秒ランダムに待機
"""

from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from rank_collector import db
from rank_collector.config import (
    ANALYTICS_LOOKBACK_DAYS,
    JOB_BATCH_SIZE,
    JOB_DELAY_MAX,
    JOB_DELAY_MIN,
    KEYWORD_DELAY_MAX,
    KEYWORD_DELAY_MIN,
)
from rank_collector.fetcher import RequestExecutor
from rank_collector.identity import IdentityRotator
from rank_collector.models import (
    CycleSummary,
    JobStatus,
    KeywordAnalytics,
    KeywordResult,
    PositionSample,
    ProxyEndpoint,
    TrackingFrequency,
    TrackingJob,
)
from rank_collector.proxy_pool import ProxyPool
from rank_collector.scraper import ResultParser, build_search_url
from rank_collector.session import SessionState
from rank_collector.trend import analyze_keyword, classify, summarize_trends

logger = logging.getLogger(__name__)

TRACKING_COMPLETE = "tracking_complete"
TRACKING_FAILED = "tracking_failed"


def next_due_time(frequency: TrackingFrequency | str, at: datetime) -> datetime:
    """追跡頻度から次回実行時刻を計算する."""
    return at + TrackingFrequency(frequency).interval


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShutdownRequested(Exception):
    """停止シグナルによりジョブの途中で処理を打ち切った."""


class JobScheduler:
    """期限の来たジョブを直列に処理する.

    Args:
        store: 永続化・通知の実装 (既定は db モジュール)
        parser: 検索結果パーサ
        rng: 処理順・待機時間の乱数源
        sleep: 待機関数 (既定ではキーワード間の待機は停止要求で打ち切られる)
        now: 現在時刻 (UTC aware) を返す関数
        batch_size: 1 サイクルで処理する最大ジョブ数
        job_delay: ジョブ間の待機秒数の範囲
        executor_factory: (job, endpoints) -> RequestExecutor
        shutdown: セットされると現在のキーワード処理後にサイクルを止める
    """

    def __init__(
        self,
        store=db,
        parser: ResultParser | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], object] | None = None,
        now: Callable[[], datetime] = _utcnow,
        batch_size: int = JOB_BATCH_SIZE,
        job_delay: tuple[float, float] = (JOB_DELAY_MIN, JOB_DELAY_MAX),
        executor_factory: Callable[[TrackingJob, list[ProxyEndpoint]], RequestExecutor] | None = None,
        shutdown: threading.Event | None = None,
    ) -> None:
        self.store = store
        self.parser = parser or ResultParser()
        self._rng = rng or random.Random()
        self._now = now
        self._batch_size = batch_size
        self._job_delay = job_delay
        self._executor_factory = executor_factory or self._build_executor
        self.shutdown = shutdown or threading.Event()
        self._sleep = sleep or self.shutdown.wait
        # 取得中のバックオフは停止要求があっても待ち切る
        self._fetch_sleep = sleep or time.sleep

    def _build_executor(self, job: TrackingJob, endpoints: list[ProxyEndpoint]) -> RequestExecutor:
        # セッション・識別情報はジョブごとに作り直す
        return RequestExecutor(
            identity=IdentityRotator(rng=self._rng),
            session=SessionState(),
            proxy_pool=ProxyPool(endpoints, regions={job.marketplace}),
            rng=self._rng,
            sleep=self._fetch_sleep,
        )

    def run_cycle(self) -> CycleSummary:
        summary = CycleSummary()
        started = time.monotonic()

        now = self._now()
        jobs = []
        for job in self.store.load_due_jobs(self._batch_size):
            if job.is_due(now):
                jobs.append(job)
            else:
                logger.warning("実行期限前のジョブをスキップ: id=%s, next_run_at=%s", job.id, job.next_run_at)
        if not jobs:
            logger.info("実行対象のジョブはありません")
            return summary
        logger.info("実行対象のジョブ: %d 件", len(jobs))

        ordered = list(jobs)
        self._rng.shuffle(ordered)
        proxies = self._load_proxies({job.user_id for job in ordered})

        for i, job in enumerate(ordered):
            if i > 0 and self._wait_between_jobs():
                summary.interrupted = True
                break
            if self.shutdown.is_set():
                summary.interrupted = True
                break

            status = self.run_job(job, proxies.get(job.user_id, []))
            if status is None:
                summary.interrupted = True
                break
            summary.processed += 1
            if status == JobStatus.FAILED:
                summary.failed += 1
            else:
                summary.successful += 1

        logger.info(
            "サイクル完了: 処理 %d 件, 成功 %d 件, 失敗 %d 件%s, 所要時間 %.1f 秒",
            summary.processed, summary.successful, summary.failed,
            " (停止要求により中断)" if summary.interrupted else "",
            time.monotonic() - started,
        )
        return summary

    def _wait_between_jobs(self) -> bool:
        """ジョブ間の待機. 停止要求が来たら True."""
        delay = self._rng.uniform(*self._job_delay)
        logger.debug("次のジョブまで %.1f 秒待機", delay)
        return self.shutdown.wait(delay)

    def _load_proxies(self, user_ids: set[str]) -> dict[str, list[ProxyEndpoint]]:
        proxies: dict[str, list[ProxyEndpoint]] = {}
        for user_id in user_ids:
            try:
                proxies[user_id] = self.store.load_enabled_proxies(user_id)
            except Exception:
                # プロキシが読めなくても直接接続で続行する
                logger.exception("プロキシ設定の取得に失敗: user=%s (直接接続で続行)", user_id)
                proxies[user_id] = []
        return proxies

    def run_job(self, job: TrackingJob, endpoints: list[ProxyEndpoint]) -> JobStatus | None:
        """ジョブ 1 件を処理し、更新後のステータスを返す.

        停止要求で中断した場合は None (スケジュールは更新しない)。
        """
        logger.info("ジョブ開始: id=%s, asin=%s, keywords=%d", job.id, job.asin, len(job.keywords))
        try:
            results = self._track_keywords(job, endpoints)
            finished_at = self._now()
            self.store.update_job_schedule(
                job.id, finished_at, next_due_time(job.tracking_frequency, finished_at), JobStatus.ACTIVE,
            )
        except ShutdownRequested:
            logger.warning("停止要求によりジョブを中断: id=%s", job.id)
            return None
        except Exception as e:
            logger.exception("ジョブ処理中に想定外のエラー: id=%s", job.id)
            self._mark_failed(job, e)
            return JobStatus.FAILED

        try:
            analytics = self.analyze_job(job)
        except Exception:
            # 集計の失敗はジョブの成否に影響しない
            logger.exception("集計に失敗: id=%s", job.id)
            analytics = []

        self._notify(job, TRACKING_COMPLETE, {
            "jobId": job.id,
            "jobName": f"{job.asin} Tracking",
            "keywords": job.keywords,
            "results": [r.to_dict() for r in results],
            "analytics": [a.to_dict() for a in analytics],
        })
        return JobStatus.ACTIVE

    def _mark_failed(self, job: TrackingJob, error: Exception) -> None:
        try:
            self.store.update_job_schedule(job.id, self._now(), None, JobStatus.FAILED)
        except Exception:
            logger.exception("ジョブの failed 更新に失敗: id=%s", job.id)
        self._notify(job, TRACKING_FAILED, {
            "jobId": job.id,
            "jobName": f"{job.asin} Tracking",
            "keywords": job.keywords,
            "error": str(error),
        })

    def analyze_job(self, job: TrackingJob) -> list[KeywordAnalytics]:
        """ジョブの全キーワードについて保持している履歴から集計を作り直す."""
        now = self._now()
        since = now - timedelta(days=ANALYTICS_LOOKBACK_DAYS)
        analytics = []
        for keyword in job.keywords:
            history = self.store.load_position_history(job.id, keyword, since=since)
            result = analyze_keyword(keyword, history, now)
            if result is not None:
                analytics.append(result)
        counts = summarize_trends(analytics)
        logger.info(
            "集計: job=%s, 改善 %d 件, 悪化 %d 件, 横ばい %d 件",
            job.id, counts["improving"], counts["declining"], counts["stable"],
        )
        return analytics

    def _track_keywords(self, job: TrackingJob, endpoints: list[ProxyEndpoint]) -> list[KeywordResult]:
        executor = self._executor_factory(job, endpoints)
        delay_min = job.random_delay_min if job.random_delay_min is not None else KEYWORD_DELAY_MIN
        delay_max = job.random_delay_max if job.random_delay_max is not None else KEYWORD_DELAY_MAX
        if delay_min > delay_max:
            logger.warning(
                "ランダム遅延の範囲が逆転しています: job=%s, min=%s, max=%s (min で待機)",
                job.id, delay_min, delay_max,
            )
            delay_max = delay_min

        results = []
        for keyword in job.keywords:
            if self.shutdown.is_set():
                raise ShutdownRequested()
            delay = self._rng.uniform(delay_min, delay_max)
            logger.debug("%.1f 秒待機してから検索: %s", delay, keyword)
            self._sleep(delay)
            # 待機中に停止要求が来たら次の取得は始めない
            if self.shutdown.is_set():
                raise ShutdownRequested()
            results.append(self.track_keyword(job, keyword, executor))
        return results

    def track_keyword(self, job: TrackingJob, keyword: str, executor: RequestExecutor) -> KeywordResult:
        """キーワード 1 件を取得・解析し、順位サンプルを追記する.

        取得に失敗しても順位 None のサンプルを書き込む (履歴に欠損を残すため)。
        """
        url = build_search_url(job.marketplace, keyword)
        started = time.monotonic()
        outcome = executor.fetch(url)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        tracked_at = self._now()

        if outcome.ok:
            parsed = self.parser.parse(outcome.body, job.asin)
            sample = PositionSample(
                organic_position=parsed.organic_position,
                sponsored_position=parsed.sponsored_position,
                search_volume_estimate=parsed.search_volume_estimate,
                competition_level=parsed.competition_level,
                tracked_at=tracked_at,
            )
        else:
            logger.warning(
                "キーワード取得失敗: job=%s, keyword=%s, %s (%s)",
                job.id, keyword, outcome.kind.value, outcome.reason,
            )
            sample = PositionSample.empty(tracked_at)

        history = self.store.load_position_history(
            job.id, keyword, since=tracked_at - timedelta(days=ANALYTICS_LOOKBACK_DAYS),
        )
        previous = max(history, key=lambda s: s.tracked_at) if history else None
        trend = classify(previous, sample)

        self.store.append_position_sample(job.id, keyword, sample)
        self._record_request(job, keyword, outcome.ok, outcome.reason, elapsed_ms, outcome.user_agent)

        organic = sample.organic_position
        logger.info(
            "  %s → オーガニック %s / スポンサー %s (%s)",
            keyword,
            f"{organic}位" if organic else "圏外",
            f"{sample.sponsored_position}位" if sample.sponsored_position else "圏外",
            trend.value,
        )
        return KeywordResult(keyword=keyword, sample=sample, trend=trend, outcome=outcome.kind)

    def _record_request(
        self,
        job: TrackingJob,
        keyword: str,
        success: bool,
        error_message: str | None,
        elapsed_ms: int,
        user_agent: str | None,
    ) -> None:
        try:
            self.store.record_api_request(
                job.id, keyword, job.marketplace, success,
                None if success else error_message, elapsed_ms, user_agent,
            )
        except Exception:
            logger.exception("api_requests の記録に失敗: job=%s, keyword=%s", job.id, keyword)

    def _notify(self, job: TrackingJob, kind: str, payload: dict) -> None:
        try:
            self.store.notify(job.user_id, kind, payload)
        except Exception:
            logger.exception("通知の送信に失敗: job=%s, kind=%s", job.id, kind)
