"""Tests for HTTP downloads with retry."""

import httpx
import pytest

from fieldkit.core.catalog import http
from fieldkit.core.catalog.http import backoff_delays, fetch, is_transient
from fieldkit.core.config.models import NetworkConfig

URL = "https://tools.example.com/tools/a.py"


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", URL)
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    """Record backoff waits instead of sleeping."""
    waits: list[float] = []
    monkeypatch.setattr(http.time, "sleep", waits.append)
    return waits


class TestBackoffDelays:
    def test_doubles_without_jitter(self) -> None:
        assert list(backoff_delays(0.5, 3, jitter=False)) == [0.5, 1.0, 2.0]

    def test_no_retries(self) -> None:
        assert list(backoff_delays(1.0, 0)) == []

    def test_jitter_stays_in_range(self) -> None:
        for _ in range(20):
            second = list(backoff_delays(1.0, 2))[1]
            assert 1.6 <= second <= 2.4


class TestIsTransient:
    """Test suite for retry classification."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_server_errors(self, status: int) -> None:
        assert is_transient(_status_error(status)) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors(self, status: int) -> None:
        assert is_transient(_status_error(status)) is False

    def test_transport_errors(self) -> None:
        assert is_transient(httpx.ConnectError("refused")) is True
        assert is_transient(httpx.ReadTimeout("slow")) is True

    def test_other_exceptions(self) -> None:
        assert is_transient(OSError("disk")) is False


class TestFetch:
    """Test suite for fetch with an injected client."""

    def test_returns_body(self, sleeps) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, str(request.url)))
            return httpx.Response(200, content=b"print('hi')\n")

        assert fetch(URL, NetworkConfig(), client=_client(handler)) == b"print('hi')\n"
        assert seen == [("GET", URL)]
        assert sleeps == []

    def test_follows_redirects(self, sleeps) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(302, headers={"Location": URL})
            return httpx.Response(200, content=b"moved")

        client = _client(handler)
        assert fetch("https://tools.example.com/old", NetworkConfig(), client=client) == b"moved"

    def test_retries_transient_failures(self, sleeps) -> None:
        outcomes = iter([httpx.Response(503), httpx.ConnectError("refused"), httpx.Response(200)])

        def handler(request: httpx.Request) -> httpx.Response:
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        network = NetworkConfig(max_retries=3, base_delay=0.5)
        assert fetch(URL, network, client=_client(handler)) == b""
        assert len(sleeps) == 2
        assert 0.4 <= sleeps[0] <= 0.6
        assert 0.8 <= sleeps[1] <= 1.2

    def test_gives_up_after_retries(self, sleeps) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        with pytest.raises(httpx.HTTPStatusError):
            fetch(URL, NetworkConfig(max_retries=2), client=_client(handler))
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_client_error_not_retried(self, sleeps) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            fetch(URL, NetworkConfig(max_retries=3), client=_client(handler))
        assert exc_info.value.response.status_code == 404
        assert len(calls) == 1
        assert sleeps == []

    def test_zero_retries(self, sleeps) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            fetch(URL, NetworkConfig(max_retries=0), client=_client(handler))
        assert sleeps == []
