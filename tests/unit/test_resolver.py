"""Unit tests for backend address resolution."""

import pytest

from comfychat.core.resolver import build_auth_headers, image_url, resolve_base, websocket_url


class TestResolveBase:
    """Tests for resolve_base."""

    @pytest.mark.parametrize(
        "host, expected",
        [
            ("127.0.0.1:8188", "http://127.0.0.1:8188"),
            ("  127.0.0.1:8188/  ", "http://127.0.0.1:8188"),
            ("http://host:8188/", "http://host:8188"),
            ("https://pod.example.com", "https://pod.example.com"),
            ("https://pod.example.com/proxy/", "https://pod.example.com/proxy"),
        ],
    )
    def test_insecure_origin(self, host, expected):
        assert resolve_base(host) == expected

    def test_secure_origin_infers_https(self):
        assert resolve_base("pod.example.com", secure_origin=True) == "https://pod.example.com"

    def test_explicit_scheme_wins_over_origin(self):
        assert resolve_base("http://lan:8188", secure_origin=True) == "http://lan:8188"

    def test_strips_only_one_slash(self):
        assert resolve_base("host//") == "http://host/"


class TestBuildAuthHeaders:
    """Tests for build_auth_headers."""

    def test_token(self):
        assert build_auth_headers("abc") == {"Authorization": "Bearer abc"}

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_no_token(self, token):
        assert build_auth_headers(token) == {}


class TestUrls:
    """Tests for artifact and push channel URLs."""

    def test_image_url(self):
        url = image_url("http://h:8188", "out 1.png", "sub/dir", "output")
        assert url == "http://h:8188/view?filename=out+1.png&subfolder=sub%2Fdir&type=output"

    def test_websocket_url_plain(self):
        assert websocket_url("http://h:8188", "abc") == "ws://h:8188/ws?clientId=abc"

    def test_websocket_url_secure_with_token(self):
        url = websocket_url("https://pod.example.com", "abc", "t/k n")
        assert url == "wss://pod.example.com/ws?clientId=abc&token=t%2Fk+n"

    def test_websocket_url_keeps_path_prefix(self):
        assert websocket_url("https://h/proxy", "abc") == "wss://h/proxy/ws?clientId=abc"
