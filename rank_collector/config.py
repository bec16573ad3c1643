"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


# --- Supabase ---
# 未設定でも import は通す。クライアント生成時に検査する (db._get_client)
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")

# --- Amazon 検索 ---
MARKETPLACE_URLS = {
    "US": "https://www.amazon.com",
    "UK": "https://www.amazon.co.uk",
    "DE": "https://www.amazon.de",
    "FR": "https://www.amazon.fr",
    "IT": "https://www.amazon.it",
    "ES": "https://www.amazon.es",
    "CA": "https://www.amazon.ca",
    "JP": "https://www.amazon.co.jp",
    "AU": "https://www.amazon.com.au",
    "IN": "https://www.amazon.in",
    "MX": "https://www.amazon.com.mx",
    "BR": "https://www.amazon.com.br",
}
DEFAULT_MARKETPLACE = "US"
SEARCH_PATH_TEMPLATE = "/s?k={keyword}"

# --- User-Agent ---
USER_AGENTS = [
    # Chrome / Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36",
    # Chrome / macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36",
    # Firefox / Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) "
    "Gecko/20100101 Firefox/133.0",
    # Safari / macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/18.0 Safari/605.1.15",
    # Edge / Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
    # Safari / iOS
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.1 Mobile/15E148 Safari/604.1",
    # Chrome / Android
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Mobile Safari/537.36",
]

ACCEPT_LANGUAGES = [
    "en-US,en;q=0.9",
    "en-US,en;q=0.8,en-GB;q=0.7",
    "en-GB,en;q=0.9,en-US;q=0.8",
]

# --- リクエスト設定 ---
REQUEST_INTERVAL_MIN = _env_float("REQUEST_INTERVAL_MIN", 2.0)
REQUEST_INTERVAL_MAX = _env_float("REQUEST_INTERVAL_MAX", 8.0)
REQUEST_TIMEOUT = _env_float("REQUEST_TIMEOUT", 15.0)  # 秒

MAX_RETRIES = _env_int("MAX_RETRIES", 3)
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 10000
BACKOFF_JITTER_MS = 1000

# --- ブロック検知 ---
BLOCK_STATUS_CODES = frozenset({403, 503})
BLOCK_SIGNATURES = (
    "captcha",
    "verify you are human",
    "unusual traffic",
    "suspicious activity",
    "robot check",
    "prove you're not a robot",
    "automated access",
)

# --- セッション ---
SESSION_TIMEOUT = _env_float("SESSION_TIMEOUT", 300.0)  # 秒

# --- プロキシ ---
PROXY_TEST_URL = os.getenv("PROXY_TEST_URL", "https://httpbin.org/ip")
PROXY_TEST_TIMEOUT = 10.0  # 秒
DEFAULT_PROXY_ZONES = ["US"]

# --- スケジューラ ---
JOB_BATCH_SIZE = _env_int("JOB_BATCH_SIZE", 50)
JOB_DELAY_MIN = _env_float("JOB_DELAY_MIN", 5.0)
JOB_DELAY_MAX = _env_float("JOB_DELAY_MAX", 15.0)
KEYWORD_DELAY_MIN = 2.0
KEYWORD_DELAY_MAX = 8.0

# --- 解析 ---
# 経験則による値。根拠はないので調整可能にしておく
COMPETITION_THRESHOLDS = (
    (8, "high"),
    (4, "medium"),
    (1, "low"),
)
SEARCH_VOLUME_DIVISOR = 100
SEARCH_VOLUME_MIN = 100
SEARCH_VOLUME_MAX = 10000

ANALYTICS_LOOKBACK_DAYS = 30
ANALYTICS_DELTA_DAYS = 7
TREND_THRESHOLD = 2
MISSING_POSITION = 999

# --- ログ ---
LOG_DIR = Path(os.getenv("LOG_DIR", str(_PROJECT_ROOT / "logs")))
