from __future__ import annotations

from typing import Any

import pytest
import requests

from grantsync.errors import UpstreamUnavailableError
from grantsync.ingest.http import BODY_EXCERPT_CHARS, PoliteHttpClient


def _response(status_code: int, body: str, *, url: str = "https://api.example.org/search") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = body.encode("utf-8")
    response.encoding = "utf-8"
    response.url = url
    response.reason = "Service Unavailable" if status_code == 503 else "OK"
    return response


def _client(monkeypatch: pytest.MonkeyPatch, handler) -> tuple[PoliteHttpClient, list[dict[str, Any]]]:  # noqa: ANN001
    client = PoliteHttpClient(requests_per_second=0)
    calls: list[dict[str, Any]] = []

    def fake_request(**kwargs: Any) -> requests.Response:
        calls.append(kwargs)
        return handler(**kwargs)

    monkeypatch.setattr(client._session, "request", fake_request)
    return client, calls


def test_non_2xx_status_raises_with_body_excerpt(monkeypatch: pytest.MonkeyPatch) -> None:
    body = "maintenance  window\n" + "x" * 1000
    client, _ = _client(monkeypatch, lambda **_kwargs: _response(503, body))

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        client.get_json("https://api.example.org/search")

    error = excinfo.value
    assert error.status_code == 503
    assert error.url == "https://api.example.org/search"
    assert error.body_excerpt is not None
    assert error.body_excerpt.startswith("maintenance window x")
    assert len(error.body_excerpt) == BODY_EXCERPT_CHARS
    assert "returned 503" in str(error)


def test_transport_error_is_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(**_kwargs: Any) -> requests.Response:
        raise requests.ConnectionError("connection refused")

    client, _ = _client(monkeypatch, handler)

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        client.post_json("https://api.example.org/search", payload={"q": 1})

    assert excinfo.value.status_code is None
    assert "ConnectionError" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)


def test_non_json_body_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(monkeypatch, lambda **_kwargs: _response(200, "<html>not json</html>"))

    with pytest.raises(UpstreamUnavailableError, match="non-JSON"):
        client.get_json("https://api.example.org/search")


def test_post_json_sends_payload_and_headers(monkeypatch: pytest.MonkeyPatch) -> None:
    client, calls = _client(monkeypatch, lambda **_kwargs: _response(200, '{"data": []}'))

    body = client.post_json("https://api.example.org/search", payload={"rows": 5}, headers={"X-API-Key": "k"})

    assert body == {"data": []}
    assert calls[0]["method"] == "POST"
    assert calls[0]["json"] == {"rows": 5}
    assert calls[0]["headers"] == {"X-API-Key": "k"}
    assert calls[0]["timeout"] == client.timeout_tuple


def test_get_text_returns_body(monkeypatch: pytest.MonkeyPatch) -> None:
    client, calls = _client(monkeypatch, lambda **_kwargs: _response(200, "a,b\n1,2\n"))

    assert client.get_text("https://data.example.org/grants.csv", params={"v": "1"}) == "a,b\n1,2\n"
    assert calls[0]["params"] == {"v": "1"}


def test_timeout_tuple_bounds_connect_timeout() -> None:
    assert PoliteHttpClient(timeout_seconds=30.0).timeout_tuple == (5.0, 30.0)
    assert PoliteHttpClient(timeout_seconds=0.5).timeout_tuple == (1.0, 1.0)
