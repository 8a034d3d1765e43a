"""
Tests for HttpSource status and transport error mapping.
"""
from unittest.mock import MagicMock

import pytest
import requests

from axiom_cache.errors import PermanentUpstreamError, TransientUpstreamError
from axiom_cache.sources.http import HttpSource


def make_response(status, content=b""):
    response = MagicMock()
    response.status_code = status
    response.content = content
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


def test_ok_returns_body(session):
    session.get.return_value = make_response(200, b"<html>")
    source = HttpSource(session=session, default_timeout=12)

    assert source.fetch("https://example.com/a") == b"<html>"
    session.get.assert_called_once_with("https://example.com/a", timeout=12)


def test_explicit_timeout_wins(session):
    session.get.return_value = make_response(200)
    HttpSource(session=session).fetch("https://example.com/a", timeout=3)
    session.get.assert_called_once_with("https://example.com/a", timeout=3)


@pytest.mark.parametrize("status", [500, 503, 408, 429])
def test_server_errors_are_transient(session, status):
    session.get.return_value = make_response(status)
    with pytest.raises(TransientUpstreamError) as exc_info:
        HttpSource(session=session).fetch("https://example.com/a")
    assert exc_info.value.status_code == status


@pytest.mark.parametrize("status", [400, 403, 404])
def test_client_errors_are_permanent(session, status):
    session.get.return_value = make_response(status)
    with pytest.raises(PermanentUpstreamError) as exc_info:
        HttpSource(session=session).fetch("https://example.com/a")
    assert exc_info.value.status_code == status


@pytest.mark.parametrize("error", [
    requests.Timeout("slow"),
    requests.ConnectionError("reset"),
    requests.exceptions.ChunkedEncodingError("connection broken mid-body"),
])
def test_transport_errors_are_transient(session, error):
    session.get.side_effect = error
    with pytest.raises(TransientUpstreamError):
        HttpSource(session=session).fetch("https://example.com/a")


def test_malformed_url_is_permanent(session):
    session.get.side_effect = requests.exceptions.InvalidURL("bad url")
    with pytest.raises(PermanentUpstreamError):
        HttpSource(session=session).fetch("not a url")
