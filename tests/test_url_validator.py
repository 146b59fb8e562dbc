"""Тесты URLValidator."""

import pytest

from tabpilot.security.url_validator import URLValidationError, URLValidator


@pytest.fixture
def validator():
    return URLValidator()


class TestNavigation:
    @pytest.mark.parametrize("url,expected", [
        ("example.com", "https://example.com"),
        ("https://example.com/path?q=1", "https://example.com/path?q=1"),
        ("http://localhost:3000", "http://localhost:3000"),
        ("localhost:3000", "https://localhost:3000"),
        ("about:blank", "about:blank"),
    ])
    def test_normalizes(self, validator, url, expected):
        assert validator.normalize_navigation(url) == expected

    @pytest.mark.parametrize("url", [
        "javascript:alert(1)",
        "file:///etc/passwd",
        "data:text/html,<script>alert(1)</script>",
        "vbscript:msgbox",
        "",
    ])
    def test_blocks_dangerous(self, validator, url):
        with pytest.raises(URLValidationError):
            validator.normalize_navigation(url)


class TestEndpoint:
    def test_accepts_http_and_https(self, validator):
        assert validator.validate_endpoint(" https://mcp.example.com/mcp ") == "https://mcp.example.com/mcp"
        assert validator.validate_endpoint("http://localhost:9000/mcp") == "http://localhost:9000/mcp"

    @pytest.mark.parametrize("url", ["mcp.example.com", "ftp://host/file", "file:///tmp/x", ""])
    def test_rejects(self, validator, url):
        with pytest.raises(URLValidationError):
            validator.validate_endpoint(url)
