from __future__ import annotations

import pytest

from terminal_connector.exec.endpoint import Endpoint


class TestEndpoint:
    def test_from_ws_url(self) -> None:
        endpoint = Endpoint.from_url("ws://localhost:3333")

        assert endpoint.scheme == "ws"
        assert endpoint.host == "localhost:3333"
        assert endpoint.url == "ws://localhost:3333/"
        assert endpoint.headers == {}

    def test_http_urls_map_to_websocket_schemes(self) -> None:
        assert Endpoint.from_url("http://host/api").scheme == "ws"
        assert Endpoint.from_url("https://host/api").scheme == "wss"

    def test_rejects_other_schemes(self) -> None:
        with pytest.raises(ValueError):
            Endpoint.from_url("ftp://host/")
        with pytest.raises(ValueError):
            Endpoint.from_url("not a url")

    def test_join_appends_segments(self) -> None:
        base = Endpoint.from_url("ws://localhost:3333")

        assert base.join("connect").url == "ws://localhost:3333/connect"
        assert base.join("attach", 31).url == "ws://localhost:3333/attach/31"
        assert base.url == "ws://localhost:3333/"

    def test_join_under_base_path(self) -> None:
        base = Endpoint.from_url("wss://gateway.example.com/ws-123/exec/")

        assert base.join("tools").url == "wss://gateway.example.com/ws-123/exec/tools"

    def test_join_quotes_segments(self) -> None:
        base = Endpoint.from_url("ws://host")

        assert base.join("a b/c").path == "/a%20b%2Fc"

    def test_bearer_header(self) -> None:
        endpoint = Endpoint.from_url("wss://host/exec", token="secret")

        assert endpoint.headers == {"Authorization": "Bearer secret"}
        assert "secret" not in endpoint.url

    def test_token_in_query(self) -> None:
        endpoint = Endpoint.from_url("wss://host/connect", token="secret", token_in_query=True)

        assert endpoint.url == "wss://host/connect?token=secret"
        assert endpoint.headers == {}

    def test_repr_hides_token(self) -> None:
        endpoint = Endpoint.from_url("wss://host/connect", token="secret", token_in_query=True)

        assert "secret" not in repr(endpoint)
