"""順位推移の判定と集計.

集計は毎回保持している履歴全体から再計算する (差分状態は持たない)。
履歴の並び順は問わない。
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from rank_collector.config import (
    ANALYTICS_DELTA_DAYS,
    ANALYTICS_LOOKBACK_DAYS,
    MISSING_POSITION,
    TREND_THRESHOLD,
)
from rank_collector.models import KeywordAnalytics, PositionSample, Trend


def comparable_position(sample: PositionSample) -> int:
    """比較用の順位. オーガニック → スポンサー → 999 の順に採用する."""
    if sample.organic_position is not None:
        return sample.organic_position
    if sample.sponsored_position is not None:
        return sample.sponsored_position
    return MISSING_POSITION


def classify(
    previous: PositionSample | None,
    current: PositionSample,
    threshold: int = TREND_THRESHOLD,
) -> Trend:
    """前回サンプルと比較して new / up / down / stable を判定する.

    順位は数値が小さいほど良い。
    """
    if previous is None:
        return Trend.NEW
    change = comparable_position(previous) - comparable_position(current)
    if change > threshold:
        return Trend.UP
    if change < -threshold:
        return Trend.DOWN
    return Trend.STABLE


def position_change(previous: int | None, current: int | None) -> int:
    """順位の変化量 (正 = 改善). どちらかが None なら 0."""
    if previous is None or current is None:
        return 0
    return previous - current


def _sorted_desc(history: Iterable[PositionSample]) -> list[PositionSample]:
    return sorted(history, key=lambda s: s.tracked_at, reverse=True)


def delta_change(window: list[PositionSample]) -> int | None:
    """期間内の最古と最新のオーガニック順位差 (正 = 改善).

    window は新しい順。サンプルが 2 件未満、または両端に順位が無ければ None。
    """
    if len(window) < 2:
        return None
    latest, oldest = window[0], window[-1]
    if latest.organic_position is None or oldest.organic_position is None:
        return None
    return oldest.organic_position - latest.organic_position


def analyze_keyword(
    keyword: str,
    history: Iterable[PositionSample],
    now: datetime,
    lookback_days: int = ANALYTICS_LOOKBACK_DAYS,
    delta_days: int = ANALYTICS_DELTA_DAYS,
) -> KeywordAnalytics | None:
    """キーワード 1 件分の集計を行う. 期間内に履歴が無ければ None."""
    lookback_from = now - timedelta(days=lookback_days)
    window = [s for s in _sorted_desc(history) if s.tracked_at >= lookback_from]
    if not window:
        return None

    current = window[0]
    previous = window[1] if len(window) > 1 else None

    organic = [s.organic_position for s in window if s.organic_position is not None]
    sponsored = [s.sponsored_position for s in window if s.sponsored_position is not None]

    delta_from = now - timedelta(days=delta_days)
    recent = [s for s in window if s.tracked_at >= delta_from]

    return KeywordAnalytics(
        keyword=keyword,
        current_organic_position=current.organic_position,
        current_sponsored_position=current.sponsored_position,
        trend=classify(previous, current),
        organic_change=position_change(
            previous.organic_position if previous else None, current.organic_position,
        ),
        sponsored_change=position_change(
            previous.sponsored_position if previous else None, current.sponsored_position,
        ),
        avg_organic_position=round(sum(organic) / len(organic)) if organic else None,
        avg_sponsored_position=round(sum(sponsored) / len(sponsored)) if sponsored else None,
        best_organic_position=min(organic) if organic else None,
        best_sponsored_position=min(sponsored) if sponsored else None,
        worst_organic_position=max(organic) if organic else None,
        worst_sponsored_position=max(sponsored) if sponsored else None,
        total_tracked=len(window),
        delta_change=delta_change(recent),
    )


def summarize_trends(analytics: Iterable[KeywordAnalytics]) -> dict[str, int]:
    """改善・悪化・横ばいのキーワード数を数える."""
    counts = {"improving": 0, "declining": 0, "stable": 0}
    for a in analytics:
        if a.trend == Trend.UP:
            counts["improving"] += 1
        elif a.trend == Trend.DOWN:
            counts["declining"] += 1
        else:
            counts["stable"] += 1
    return counts
