"""Tests for get_public_app_url and the links built on it."""
import os
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse


def test_frontend_public_url_takes_precedence():
    from utils.public_app_url import get_public_app_url

    with patch.dict(
        os.environ,
        {"FRONTEND_PUBLIC_URL": "https://coach.example.com/", "PUBLIC_APP_URL": "https://other.example.com"},
    ):
        assert get_public_app_url() == "https://coach.example.com"


def test_falls_back_through_public_app_url_and_frontend_url():
    from utils.public_app_url import get_public_app_url

    with patch.dict(os.environ, {"PUBLIC_APP_URL": "https://app.example.com"}):
        assert get_public_app_url() == "https://app.example.com"
    with patch.dict(os.environ, {"FRONTEND_URL": "https://web.example.com"}):
        assert get_public_app_url() == "https://web.example.com"


def test_default_domain_when_unset():
    from utils.public_app_url import DEFAULT_PUBLIC_APP_URL, get_public_app_url

    assert get_public_app_url() == DEFAULT_PUBLIC_APP_URL


def test_plain_http_upgraded_except_localhost():
    from utils.public_app_url import get_public_app_url

    with patch.dict(os.environ, {"FRONTEND_PUBLIC_URL": "http://coach.example.com"}):
        assert get_public_app_url() == "https://coach.example.com"
    with patch.dict(os.environ, {"FRONTEND_PUBLIC_URL": "http://localhost:3000"}):
        assert get_public_app_url() == "http://localhost:3000"


def test_resume_and_session_links():
    from utils.public_app_url import resume_url, session_url

    resume = urlparse(resume_url("session-1", "a+b@example.com"))
    assert resume.path == "/interview-coach"
    assert parse_qs(resume.query) == {"resume_session": ["session-1"], "email": ["a+b@example.com"]}

    session = urlparse(session_url("full_mock", "a@example.com", "cs_test_1"))
    assert parse_qs(session.query) == {
        "session_type": ["full_mock"],
        "email": ["a@example.com"],
        "checkout_session_id": ["cs_test_1"],
    }
