import io

import pytest
import requests

from politecrawl.crawler.fetcher import WebFetcher, declared_charset


def make_response(body: bytes, content_type: str, status: int = 200) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "https://example.com/"
    response.headers['Content-Type'] = content_type
    response.raw = io.BytesIO(body)
    return response


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    def get(self, url, timeout=None, stream=False):
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def web_fetcher():
    f = WebFetcher(user_agent="politecrawl-test/1.0", max_content_size=1024)
    yield f
    f.close()


def use_session(monkeypatch, fetcher, session):
    monkeypatch.setattr(fetcher, "_session", lambda: session)


def test_declared_charset():
    assert declared_charset("text/html; charset=UTF-8") == "utf-8"
    assert declared_charset('text/html; charset="windows-1252"') == "windows-1252"
    assert declared_charset("text/html") is None
    assert declared_charset("") is None


def test_html_without_charset_is_decoded_as_utf8(web_fetcher, monkeypatch):
    body = "<title>Café Zürich</title>".encode("utf-8")
    use_session(monkeypatch, web_fetcher, StubSession(make_response(body, "text/html")))

    result = web_fetcher.fetch("https://example.com/")
    assert result.ok
    assert result.content == "<title>Café Zürich</title>"
    assert result.encoding is None


def test_declared_charset_is_honoured(web_fetcher, monkeypatch):
    body = "<title>Café</title>".encode("cp1252")
    response = make_response(body, "text/html; charset=windows-1252")
    use_session(monkeypatch, web_fetcher, StubSession(response))

    result = web_fetcher.fetch("https://example.com/")
    assert result.content == "<title>Café</title>"
    assert result.encoding == "windows-1252"


def test_undecodable_body_falls_back(web_fetcher, monkeypatch):
    body = "<p>naïve</p>".encode("cp1252")
    use_session(monkeypatch, web_fetcher, StubSession(make_response(body, "text/html")))

    assert web_fetcher.fetch("https://example.com/").content == "<p>naïve</p>"


def test_oversized_body_is_dropped(web_fetcher, monkeypatch):
    use_session(monkeypatch, web_fetcher, StubSession(make_response(b"x" * 4096, "text/plain")))

    result = web_fetcher.fetch("https://example.com/")
    assert result.status_code == 200
    assert result.content is None


def test_binary_content_is_not_read(web_fetcher, monkeypatch):
    use_session(monkeypatch, web_fetcher, StubSession(make_response(b"\x89PNG", "image/png")))

    result = web_fetcher.fetch("https://example.com/logo.png")
    assert result.status_code == 200
    assert result.content is None
    assert result.content_type == "image/png"


def test_transport_error_returns_status_zero(web_fetcher, monkeypatch):
    use_session(monkeypatch, web_fetcher,
                StubSession(error=requests.ConnectionError("connection refused")))

    result = web_fetcher.fetch("https://example.com/")
    assert result.status_code == 0
    assert not result.ok
    assert "connection refused" in result.error
    assert web_fetcher.get_stats()['failed_requests'] == 1


def test_timeout_is_reported(web_fetcher, monkeypatch):
    use_session(monkeypatch, web_fetcher, StubSession(error=requests.Timeout()))

    result = web_fetcher.fetch("https://example.com/")
    assert result.status_code == 0
    assert result.error == "Request timeout"
