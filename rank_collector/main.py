"""Amazon 検索順位トラッキング — メインエントリーポイント.

使い方:
  python -m rank_collector.main                 # スケジューリングを 1 サイクル実行
  python -m rank_collector.main check-proxies   # 全プロキシの疎通テスト
  python -m rank_collector.main analyze         # 全ジョブの順位推移を集計
"""

from __future__ import annotations

import logging
import signal
import sys
from datetime import datetime

from rank_collector import db
from rank_collector.config import LOG_DIR
from rank_collector.proxy_pool import ProxyPool
from rank_collector.scheduler import JobScheduler
from rank_collector.trend import summarize_trends


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def run() -> None:
    """スケジューリングを 1 サイクル実行する."""
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("=== 検索順位トラッキング 開始 ===")

    scheduler = JobScheduler()

    def _request_shutdown(signum, frame):
        logger.warning("停止シグナル受信 (%s)。現在のキーワード処理後に停止します", signum)
        scheduler.shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    summary = scheduler.run_cycle()
    logger.info("=== 検索順位トラッキング 完了 ===")
    logger.info(
        "処理ジョブ: %d 件, 成功: %d 件, 失敗: %d 件",
        summary.processed, summary.successful, summary.failed,
    )


def check_proxies() -> None:
    """登録済みの全プロキシを疎通テストし、結果を書き戻す."""
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("=== プロキシ疎通テスト 開始 ===")

    configs = db.load_all_proxy_configurations()
    if not configs:
        logger.warning("有効なプロキシがありません。終了します。")
        return

    pool = ProxyPool()
    ok_count = 0
    for user_id, provider_id, endpoint in configs:
        result = pool.test(endpoint)
        db.save_proxy_test_result(user_id, provider_id, result)
        if result.success:
            ok_count += 1
        logger.info("  %s/%s → %s", user_id, provider_id, result.message)

    logger.info("=== プロキシ疎通テスト 完了: %d/%d 件成功 ===", ok_count, len(configs))


def analyze() -> None:
    """active な全ジョブの順位推移を履歴から集計してログに出す."""
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("=== 順位推移の集計 開始 ===")

    jobs = db.load_active_jobs()
    scheduler = JobScheduler(store=db)
    analytics = []
    for job in jobs:
        try:
            analytics.extend(scheduler.analyze_job(job))
        except Exception:
            logger.exception("集計に失敗: id=%s", job.id)

    counts = summarize_trends(analytics)
    logger.info(
        "=== 順位推移の集計 完了: ジョブ %d 件, キーワード %d 件 (改善 %d, 悪化 %d, 横ばい %d) ===",
        len(jobs), len(analytics), counts["improving"], counts["declining"], counts["stable"],
    )


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "check-proxies":
        check_proxies()
    elif command == "analyze":
        analyze()
    else:
        run()
