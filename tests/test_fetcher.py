"""fetcher モジュールのユニットテスト."""

import random
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.cookies import cookiejar_from_dict

from rank_collector.fetcher import (
    RequestExecutor,
    backoff_seconds,
    classify_response,
    find_block_signature,
)
from rank_collector.models import OutcomeKind, ProxyEndpoint
from rank_collector.proxy_pool import ProxyPool
from rank_collector.session import SessionState

FIXTURES_DIR = Path(__file__).parent / "fixtures"
URL = "https://www.amazon.com/s?k=wireless+headphones"
OK_BODY = "<html><body><div data-asin='B000000001'>ok</div></body></html>"


def _response(status_code: int = 200, text: str = OK_BODY, cookies: dict | None = None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.cookies = cookiejar_from_dict(cookies or {})
    return resp


def _executor(session=None, proxy_pool=None, sleeps=None, max_retries=3):
    return RequestExecutor(
        session=session or SessionState(),
        proxy_pool=proxy_pool,
        max_retries=max_retries,
        rng=random.Random(0),
        sleep=(sleeps if sleeps is not None else []).append,
    )


class TestClassifyResponse:
    """classify_response のテスト."""

    def test_success(self):
        outcome = classify_response(200, OK_BODY)
        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.body == OK_BODY

    def test_block_status_codes(self):
        assert classify_response(403, "Forbidden").kind == OutcomeKind.BLOCKED
        assert classify_response(503, "Service Unavailable").kind == OutcomeKind.BLOCKED

    def test_captcha_page_with_200(self):
        html = (FIXTURES_DIR / "captcha.html").read_text(encoding="utf-8")
        assert classify_response(200, html).kind == OutcomeKind.BLOCKED

    def test_signature_blocks_regardless_of_status(self):
        for status in (200, 302, 404, 500):
            outcome = classify_response(status, "<p>Please VERIFY YOU ARE HUMAN</p>")
            assert outcome.kind == OutcomeKind.BLOCKED

    def test_other_status_is_transient(self):
        assert classify_response(500, "oops").kind == OutcomeKind.TRANSIENT_ERROR
        assert classify_response(404, "not found").kind == OutcomeKind.TRANSIENT_ERROR

    def test_find_block_signature(self):
        assert find_block_signature("Our systems have detected Unusual Traffic") == "unusual traffic"
        assert find_block_signature(OK_BODY) is None


class TestBackoff:
    """backoff_seconds のテスト."""

    def test_exponential(self):
        rng = random.Random(1)
        assert 1.0 <= backoff_seconds(0, rng) <= 2.0
        assert 2.0 <= backoff_seconds(1, rng) <= 3.0
        assert 4.0 <= backoff_seconds(2, rng) <= 5.0

    def test_capped(self):
        assert 10.0 <= backoff_seconds(10, random.Random(1)) <= 11.0


class TestRequestExecutor:
    """RequestExecutor.fetch のテスト."""

    @patch("rank_collector.fetcher.requests.get")
    def test_success_first_attempt(self, mock_get):
        mock_get.return_value = _response()
        sleeps = []

        outcome = _executor(sleeps=sleeps).fetch(URL)

        assert outcome.ok
        assert outcome.body == OK_BODY
        assert outcome.attempts == 1
        assert mock_get.call_count == 1
        assert sleeps == []
        kwargs = mock_get.call_args.kwargs
        assert kwargs["allow_redirects"] is True
        assert kwargs["proxies"] is None
        assert kwargs["timeout"] > 0
        assert kwargs["headers"]["User-Agent"] == outcome.user_agent

    @patch("rank_collector.fetcher.requests.get")
    def test_all_blocked_rotates_each_time(self, mock_get):
        mock_get.return_value = _response(403, "Forbidden")
        session = SessionState()
        executor = _executor(session=session)

        with patch.object(session, "rotate", wraps=session.rotate) as spy:
            outcome = executor.fetch(URL)

        assert spy.call_count == 3
        assert mock_get.call_count == 3
        assert outcome.kind == OutcomeKind.BLOCKED
        assert outcome.attempts == 3

    @patch("rank_collector.fetcher.requests.get")
    def test_transient_does_not_rotate(self, mock_get):
        mock_get.side_effect = [_response(500, "oops"), _response()]
        session = SessionState()
        executor = _executor(session=session)

        with patch.object(session, "rotate", wraps=session.rotate) as spy:
            outcome = executor.fetch(URL)

        assert outcome.ok
        assert outcome.attempts == 2
        spy.assert_not_called()

    @patch("rank_collector.fetcher.requests.get")
    def test_timeout_is_transient(self, mock_get):
        mock_get.side_effect = requests.Timeout("read timed out")

        outcome = _executor().fetch(URL)

        assert outcome.kind == OutcomeKind.TRANSIENT_ERROR
        assert outcome.reason == "timeout"
        assert mock_get.call_count == 3

    @patch("rank_collector.fetcher.requests.get")
    def test_connection_error_is_transient(self, mock_get):
        mock_get.side_effect = [requests.ConnectionError("reset"), _response()]

        outcome = _executor().fetch(URL)

        assert outcome.ok

    @patch("rank_collector.fetcher.requests.get")
    def test_sleep_schedule(self, mock_get):
        """バックオフと最小間隔が交互に入ること."""
        mock_get.return_value = _response(500, "oops")
        sleeps = []

        _executor(sleeps=sleeps).fetch(URL)

        assert len(sleeps) == 4
        assert 1.0 <= sleeps[0] <= 2.0  # backoff (attempt 0)
        assert 2.0 <= sleeps[1] <= 8.0  # minimum interval
        assert 2.0 <= sleeps[2] <= 3.0  # backoff (attempt 1)
        assert 2.0 <= sleeps[3] <= 8.0

    @patch("rank_collector.fetcher.requests.get")
    def test_cookies_persisted_and_sent(self, mock_get):
        mock_get.return_value = _response(cookies={"session-id": "123"})
        session = SessionState()
        executor = _executor(session=session)

        executor.fetch(URL)
        executor.fetch(URL)

        assert session.current() == {"session-id": "123"}
        second_headers = mock_get.call_args_list[1].kwargs["headers"]
        assert second_headers["Cookie"] == "session-id=123"

    @patch("rank_collector.fetcher.requests.get")
    def test_block_clears_cookies(self, mock_get):
        mock_get.side_effect = [_response(503, "busy"), _response()]
        session = SessionState()
        session.update({"session-id": "old"})

        _executor(session=session).fetch(URL)

        first_headers = mock_get.call_args_list[0].kwargs["headers"]
        second_headers = mock_get.call_args_list[1].kwargs["headers"]
        assert first_headers["Cookie"] == "session-id=old"
        assert "Cookie" not in second_headers

    @patch("rank_collector.fetcher.requests.get")
    def test_empty_proxy_pool_fetches_directly(self, mock_get):
        mock_get.return_value = _response()

        outcome = _executor(proxy_pool=ProxyPool([])).fetch(URL)

        assert outcome.ok
        assert mock_get.call_args.kwargs["proxies"] is None

    @patch("rank_collector.fetcher.requests.get")
    def test_retry_uses_next_proxy(self, mock_get):
        mock_get.side_effect = [_response(200, "captcha required"), _response()]
        pool = ProxyPool([
            ProxyEndpoint(provider_id="p1", host="proxy1.example.com", port=8000),
            ProxyEndpoint(provider_id="p2", host="proxy2.example.com", port=8000),
        ])

        _executor(proxy_pool=pool).fetch(URL)

        first = mock_get.call_args_list[0].kwargs["proxies"]["https"]
        second = mock_get.call_args_list[1].kwargs["proxies"]["https"]
        assert first == "http://proxy1.example.com:8000"
        assert second == "http://proxy2.example.com:8000"

    @patch("rank_collector.fetcher.requests.get")
    def test_stale_session_rotated_before_fetch(self, mock_get):
        mock_get.return_value = _response()
        now = [0.0]
        session = SessionState(timeout=300, clock=lambda: now[0])
        session.update({"session-id": "old"})
        now[0] = 301.0

        _executor(session=session).fetch(URL)

        assert "Cookie" not in mock_get.call_args.kwargs["headers"]

    @patch("rank_collector.fetcher.requests.get")
    def test_malformed_url_raises(self, mock_get):
        with pytest.raises(ValueError):
            _executor().fetch("not a url")
        mock_get.assert_not_called()

    def test_invalid_max_retries(self):
        with pytest.raises(ValueError):
            RequestExecutor(max_retries=0)
