"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class TrackingFrequency(str, Enum):
    """追跡頻度."""

    HOURLY = "hourly"
    EVERY_6_HOURS = "every_6_hours"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return _FREQUENCY_INTERVALS[self]


_FREQUENCY_INTERVALS = {
    TrackingFrequency.HOURLY: timedelta(hours=1),
    TrackingFrequency.EVERY_6_HOURS: timedelta(hours=6),
    TrackingFrequency.DAILY: timedelta(hours=24),
    TrackingFrequency.WEEKLY: timedelta(days=7),
}


class JobStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class CompetitionLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class Trend(str, Enum):
    NEW = "new"
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class TrackingJob:
    """追跡ジョブ. 作成・設定変更は外部 UI が行う."""

    id: str  # uuid
    user_id: str  # uuid
    asin: str  # 追跡対象の商品 ID
    marketplace: str  # "US", "UK", ...
    keywords: list[str]
    tracking_frequency: TrackingFrequency = TrackingFrequency.DAILY
    random_delay_min: float | None = None  # 秒
    random_delay_max: float | None = None  # 秒
    status: JobStatus = JobStatus.ACTIVE
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.status != JobStatus.ACTIVE:
            return False
        return self.next_run_at is None or self.next_run_at <= now


@dataclass(frozen=True)
class PositionSample:
    """(ジョブ, キーワード) ごとの順位サンプル. 書き込み後は不変."""

    organic_position: int | None  # None = 圏外 or 取得失敗
    sponsored_position: int | None
    search_volume_estimate: int | None
    competition_level: CompetitionLevel
    tracked_at: datetime

    @classmethod
    def empty(cls, tracked_at: datetime) -> PositionSample:
        """取得失敗時の空サンプル (履歴上の欠損を可視化するため)."""
        return cls(
            organic_position=None,
            sponsored_position=None,
            search_volume_estimate=None,
            competition_level=CompetitionLevel.UNKNOWN,
            tracked_at=tracked_at,
        )


@dataclass
class ProxyEndpoint:
    """上流プロキシ. 設定は外部 UI が管理する."""

    provider_id: str
    host: str
    port: int | None = None
    username: str | None = None
    password: str | None = None
    enabled: bool = True
    zones: list[str] = field(default_factory=lambda: ["US"])


@dataclass
class ProxyTestResult:
    success: bool
    message: str
    latency: float | None = None  # 秒
    tested_at: datetime | None = None


@dataclass(frozen=True)
class Identity:
    """偽装用のクライアント識別情報."""

    user_agent: str
    headers: dict[str, str]


@dataclass(frozen=True)
class FetchOutcome:
    """1 回の取得結果. 永続化はしない."""

    kind: OutcomeKind
    body: str | None = None
    reason: str | None = None
    status_code: int | None = None
    attempts: int = 1
    user_agent: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def success(cls, body: str, status_code: int, **kwargs) -> FetchOutcome:
        return cls(OutcomeKind.SUCCESS, body=body, status_code=status_code, **kwargs)

    @classmethod
    def blocked(cls, reason: str, status_code: int | None = None, **kwargs) -> FetchOutcome:
        return cls(OutcomeKind.BLOCKED, reason=reason, status_code=status_code, **kwargs)

    @classmethod
    def transient(cls, reason: str, status_code: int | None = None, **kwargs) -> FetchOutcome:
        return cls(OutcomeKind.TRANSIENT_ERROR, reason=reason, status_code=status_code, **kwargs)


@dataclass
class ParseResult:
    """検索結果ページの解析結果."""

    organic_position: int | None
    sponsored_position: int | None
    search_volume_estimate: int | None
    competition_level: CompetitionLevel


@dataclass
class KeywordResult:
    """1 キーワード分の収集結果 (通知ペイロード用)."""

    keyword: str
    sample: PositionSample
    trend: Trend
    outcome: OutcomeKind

    def to_dict(self) -> dict:
        return {
            "keyword": self.keyword,
            "organicPosition": self.sample.organic_position,
            "sponsoredPosition": self.sample.sponsored_position,
            "searchVolume": self.sample.search_volume_estimate,
            "competitionLevel": self.sample.competition_level.value,
            "trend": self.trend.value,
            "outcome": self.outcome.value,
        }


@dataclass
class KeywordAnalytics:
    """キーワード単位の集計値."""

    keyword: str
    current_organic_position: int | None
    current_sponsored_position: int | None
    trend: Trend
    organic_change: int
    sponsored_change: int
    avg_organic_position: int | None
    avg_sponsored_position: int | None
    best_organic_position: int | None
    best_sponsored_position: int | None
    worst_organic_position: int | None
    worst_sponsored_position: int | None
    total_tracked: int
    delta_change: int | None  # 直近 N 日の変化 (正 = 改善)

    def to_dict(self) -> dict:
        return {
            "keyword": self.keyword,
            "currentOrganicPosition": self.current_organic_position,
            "currentSponsoredPosition": self.current_sponsored_position,
            "trend": self.trend.value,
            "organicChange": self.organic_change,
            "sponsoredChange": self.sponsored_change,
            "avgOrganicPosition": self.avg_organic_position,
            "avgSponsoredPosition": self.avg_sponsored_position,
            "bestOrganicPosition": self.best_organic_position,
            "bestSponsoredPosition": self.best_sponsored_position,
            "worstOrganicPosition": self.worst_organic_position,
            "worstSponsoredPosition": self.worst_sponsored_position,
            "totalTracked": self.total_tracked,
            "deltaChange": self.delta_change,
        }


@dataclass
class CycleSummary:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    interrupted: bool = False
