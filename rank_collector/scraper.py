"""Amazon 検索結果の解析モジュール.

順位の判定:
  - data-asin 属性を持つ商品コンテナを文書順に走査する
  - スポンサー枠 (sp-sponsored-result / AdHolder) とオーガニック枠を別々に数える
  - 順位 = 同じ種別で前に出現したコンテナ数 + 1
"""

from __future__ import annotations

import logging
import re
from urllib.parse import quote_plus

from bs4 import BeautifulSoup, Tag

from rank_collector.config import (
    COMPETITION_THRESHOLDS,
    DEFAULT_MARKETPLACE,
    MARKETPLACE_URLS,
    SEARCH_PATH_TEMPLATE,
    SEARCH_VOLUME_DIVISOR,
    SEARCH_VOLUME_MAX,
    SEARCH_VOLUME_MIN,
)
from rank_collector.models import CompetitionLevel, ParseResult

logger = logging.getLogger(__name__)

_SPONSORED_COMPONENT = "sp-sponsored-result"
_RESULT_COUNT_PATTERN = re.compile(r"(\d{1,3}(?:,\d{3})+|\d+)\s*results?\b", re.IGNORECASE)


def build_search_url(marketplace: str, keyword: str) -> str:
    """マーケットプレイスとキーワードから検索 URL を組み立てる.

    未知のマーケットプレイスは US にフォールバックする。
    """
    base = MARKETPLACE_URLS.get(marketplace.upper())
    if base is None:
        logger.warning("未知のマーケットプレイス: %s (US を使用)", marketplace)
        base = MARKETPLACE_URLS[DEFAULT_MARKETPLACE]
    return base + SEARCH_PATH_TEMPLATE.format(keyword=quote_plus(keyword))


def _has_asin(value) -> bool:
    return bool(value and str(value).strip())


def _is_sponsored(tag: Tag) -> bool:
    if tag.get("data-component-type") == _SPONSORED_COMPONENT:
        return True
    if "AdHolder" in (tag.get("class") or []):
        return True
    return tag.find(attrs={"data-component-type": _SPONSORED_COMPONENT}) is not None


def find_item_containers(soup: BeautifulSoup) -> list[Tag]:
    """トップレベルの商品コンテナを文書順に返す (入れ子の data-asin は除外)."""
    containers = []
    for tag in soup.find_all(attrs={"data-asin": _has_asin}):
        if tag.find_parent(attrs={"data-asin": _has_asin}) is not None:
            continue
        containers.append(tag)
    return containers


class ResultParser:
    """検索結果 HTML から順位・検索ボリューム推定・競合度を抽出する.

    個々のフィールドの抽出に失敗しても解析全体は中断せず、
    そのフィールドだけ None / unknown にする。
    """

    def __init__(
        self,
        competition_thresholds: tuple[tuple[int, str], ...] = COMPETITION_THRESHOLDS,
        volume_divisor: int = SEARCH_VOLUME_DIVISOR,
        volume_min: int = SEARCH_VOLUME_MIN,
        volume_max: int = SEARCH_VOLUME_MAX,
    ) -> None:
        self._thresholds = sorted(competition_thresholds, key=lambda t: t[0], reverse=True)
        self._volume_divisor = volume_divisor
        self._volume_min = volume_min
        self._volume_max = volume_max

    def parse(self, html: str, target_id: str) -> ParseResult:
        soup = BeautifulSoup(html or "", "html.parser")
        containers = self._safe("containers", lambda: find_item_containers(soup), None)

        if containers is None:
            organic, sponsored = None, None
            competition = CompetitionLevel.UNKNOWN
        else:
            organic, sponsored = self._safe(
                "position", lambda: self.find_positions(containers, target_id), (None, None),
            )
            competition = self._safe(
                "competition",
                lambda: self.assess_competition(sum(1 for c in containers if _is_sponsored(c))),
                CompetitionLevel.UNKNOWN,
            )

        volume = self._safe("search_volume", lambda: self.estimate_search_volume(soup), None)

        return ParseResult(
            organic_position=organic,
            sponsored_position=sponsored,
            search_volume_estimate=volume,
            competition_level=competition,
        )

    @staticmethod
    def find_positions(containers: list[Tag], target_id: str) -> tuple[int | None, int | None]:
        """対象 ID の (オーガニック順位, スポンサー順位) を返す. 見つからなければ None."""
        target = target_id.strip().upper()
        organic_seen = 0
        sponsored_seen = 0
        organic: int | None = None
        sponsored: int | None = None

        for tag in containers:
            is_target = str(tag.get("data-asin", "")).strip().upper() == target
            if _is_sponsored(tag):
                if is_target and sponsored is None:
                    sponsored = sponsored_seen + 1
                sponsored_seen += 1
            else:
                if is_target and organic is None:
                    organic = organic_seen + 1
                organic_seen += 1

        return organic, sponsored

    def estimate_search_volume(self, soup: BeautifulSoup) -> int | None:
        """「N results」表記から検索ボリュームを推定する."""
        info_bar = soup.find(attrs={"data-component-type": "s-result-info-bar"})
        text = (info_bar or soup).get_text(" ", strip=True)
        m = _RESULT_COUNT_PATTERN.search(text)
        if not m:
            return None
        count = int(m.group(1).replace(",", ""))
        return min(max(count // self._volume_divisor, self._volume_min), self._volume_max)

    def assess_competition(self, sponsored_count: int) -> CompetitionLevel:
        for minimum, level in self._thresholds:
            if sponsored_count >= minimum:
                return CompetitionLevel(level)
        return CompetitionLevel.VERY_LOW

    @staticmethod
    def _safe(field_name: str, extract, default):
        try:
            return extract()
        except (AttributeError, TypeError, ValueError, KeyError) as e:
            logger.warning("%s の抽出に失敗: %s", field_name, e)
            return default
