"""Connector configuration.

Built once at startup (usually with ``ConnectorConfig.from_env()``) and passed
explicitly to the channels and the container directory.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError
from .exec.dialect import SESSION_ID, Dialect, get_dialect
from .exec.endpoint import Endpoint

DEFAULT_SERVER_URL = "ws://localhost:3333"
DEFAULT_DESCRIPTOR_PATH = "/devworkspace-metadata/original.devworkspace.yaml"
DEFAULT_TOKEN_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/token"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_LOG_LEVEL = "WARNING"

CONNECT_PATH = "connect"
ATTACH_PATH = "attach"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConnectorConfig:
    """Configuration for connecting to an exec server."""

    server_url: str = DEFAULT_SERVER_URL
    dialect: Dialect = SESSION_ID
    token: str | None = None
    token_in_query: bool = False
    workspace_id: str | None = None
    descriptor_path: str = DEFAULT_DESCRIPTOR_PATH
    api_url: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    open_timeout: float = DEFAULT_OPEN_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConnectorConfig:
        """Build a configuration from environment variables.

        Raises:
            ConfigurationError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        dialect_name = env.get("TERMINAL_CONNECTOR_DIALECT", SESSION_ID.name)
        try:
            dialect = get_dialect(dialect_name)
        except KeyError:
            raise ConfigurationError(f"Unknown dialect: {dialect_name!r}") from None

        token_file = env.get("TERMINAL_CONNECTOR_TOKEN_FILE", DEFAULT_TOKEN_FILE)
        token = env.get("CHE_MACHINE_TOKEN") or read_token_file(token_file)

        return cls(
            server_url=env.get("MACHINE_EXEC_URL") or DEFAULT_SERVER_URL,
            dialect=dialect,
            token=token,
            token_in_query=env.get("TERMINAL_CONNECTOR_TOKEN_IN_QUERY", "").lower() in _TRUE,
            workspace_id=env.get("CHE_WORKSPACE_ID") or None,
            descriptor_path=env.get("DEVWORKSPACE_DESCRIPTOR") or DEFAULT_DESCRIPTOR_PATH,
            api_url=env.get("CHE_API") or None,
            request_timeout=_seconds(env, "TERMINAL_CONNECTOR_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            log_level=env.get("TERMINAL_CONNECTOR_LOG_LEVEL") or DEFAULT_LOG_LEVEL,
        )

    def require_token(self) -> str:
        """Return the bearer credential, raising if there is none."""
        if not self.token:
            raise ConfigurationError(
                "Missing credential. Set CHE_MACHINE_TOKEN or mount a service account token."
            )
        return self.token

    def base_endpoint(self) -> Endpoint:
        token = self.require_token() if self.dialect.requires_token else self.token
        try:
            return Endpoint.from_url(
                self.server_url, token=token, token_in_query=self.token_in_query
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def control_endpoint(self, container: str | None = None) -> Endpoint:
        """Endpoint that accepts listContainers/create requests.

        Dialects whose connection becomes the session are addressed per
        container, so ``container`` is required for them.
        """
        if self.dialect.supports_list:
            return self.base_endpoint().join(CONNECT_PATH)
        if not container:
            raise ConfigurationError(f"The {self.dialect.name} dialect needs a container name")
        return self.base_endpoint().join(container)

    def attach_endpoint(self, session_id: int) -> Endpoint:
        return self.base_endpoint().join(ATTACH_PATH, session_id)


def read_token_file(path: str | os.PathLike[str]) -> str | None:
    """Read a mounted credential, returning None if it is absent or empty."""
    token_path = Path(path)
    if not token_path.is_file():
        return None
    try:
        token = token_path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return token or None


def _seconds(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


__all__ = [
    "ConnectorConfig",
    "DEFAULT_SERVER_URL",
    "DEFAULT_DESCRIPTOR_PATH",
    "DEFAULT_TOKEN_FILE",
    "DEFAULT_REQUEST_TIMEOUT",
    "read_token_file",
]
