"""WebSocket endpoints of the exec server."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, replace
from urllib.parse import quote, urlencode, urlsplit

_SCHEMES = {"ws": "ws", "wss": "wss", "http": "ws", "https": "wss"}


@dataclass(frozen=True)
class Endpoint:
    """Address of a WebSocket endpoint plus the credential used to reach it."""

    scheme: str
    host: str
    path: str = "/"
    token: str | None = None
    token_in_query: bool = False

    @classmethod
    def from_url(
        cls, url: str, *, token: str | None = None, token_in_query: bool = False
    ) -> Endpoint:
        """Build an endpoint from a URL.

        ``http``/``https`` URLs (as published by the workspace API) are mapped
        to ``ws``/``wss``.

        Raises:
            ValueError: If the URL scheme is not a WebSocket or HTTP scheme.
        """
        parts = urlsplit(url)
        scheme = _SCHEMES.get(parts.scheme.lower())
        if scheme is None or not parts.netloc:
            raise ValueError(f"Not a WebSocket URL: {url!r}")
        return cls(
            scheme=scheme,
            host=parts.netloc,
            path=parts.path or "/",
            token=token,
            token_in_query=token_in_query,
        )

    def join(self, *segments: str | int) -> Endpoint:
        """Return a new endpoint with ``segments`` appended to the path."""
        path = self.path
        for segment in segments:
            path = posixpath.join(path, quote(str(segment).strip("/"), safe=""))
        return replace(self, path=path)

    @property
    def url(self) -> str:
        url = f"{self.scheme}://{self.host}{self.path}"
        if self.token and self.token_in_query:
            url = f"{url}?{urlencode({'token': self.token})}"
        return url

    @property
    def headers(self) -> dict[str, str]:
        if self.token and not self.token_in_query:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def __repr__(self) -> str:
        # Never leak the credential into logs
        return f"Endpoint({self.scheme}://{self.host}{self.path})"
