"""Workspace REST API lookup.

Workspaces that publish their exec server through the workspace API are
resolved here: the runtime lists the workspace machines, and the machine
named ``che-machine-exec*`` exposes the exec server URL.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import TerminalConnectorError

DEFAULT_TIMEOUT = 30.0
MACHINE_EXEC_PREFIX = "che-machine-exec"
EXEC_SERVER_NAMES = ("che-machine-exec", "terminal")


class WorkspaceAPIError(TerminalConnectorError):
    """Error from the workspace API."""

    def __init__(self, message: str, *, status_code: int | None = None, data: Any | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.data = data


class Server(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str | None = None


class Machine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    servers: dict[str, Server] = Field(default_factory=dict)


class Runtime(BaseModel):
    model_config = ConfigDict(extra="ignore")

    machines: dict[str, Machine] = Field(default_factory=dict)


class Workspace(BaseModel):
    """Workspace metadata from the API."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str | None = None
    runtime: Runtime | None = None

    def machine_names(self) -> list[str]:
        """Names of the workspace runtime's machines, in API order."""
        if self.runtime is None:
            return []
        return list(self.runtime.machines)

    def machine_exec_url(self) -> str | None:
        """URL of the exec server, or None if the runtime publishes none."""
        if self.runtime is None:
            return None
        for name, machine in self.runtime.machines.items():
            if not name.startswith(MACHINE_EXEC_PREFIX):
                continue
            for server_name in EXEC_SERVER_NAMES:
                server = machine.servers.get(server_name)
                if server is not None and server.url:
                    return server.url
        return None


def _parse_error_message(response: httpx.Response) -> tuple[str, Any | None]:
    message = f"HTTP {response.status_code}"
    try:
        parsed = response.json()
    except ValueError:
        text = response.text
        if text:
            message = f"{message}: {text[:500]}"
        return message, None
    if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
        message = f"{message}: {parsed['message']}"
    return message, parsed


class WorkspaceClient:
    """Async client for the workspace REST API."""

    def __init__(
        self,
        api_url: str,
        token: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"accept": "application/json"}
        if token:
            headers["authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = api_url.rstrip("/")
        self._headers = headers

    async def get_workspace(self, workspace_id: str) -> Workspace:
        """Fetch a workspace by id.

        Raises:
            WorkspaceAPIError: If the request fails or the response is invalid.
        """
        url = f"{self._base_url}/workspace/{workspace_id}"
        logger.debug("GET {}", url)
        try:
            response = await self._client.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise WorkspaceAPIError(f"Workspace API request failed: {e}") from e

        if response.is_error:
            message, data = _parse_error_message(response)
            raise WorkspaceAPIError(message, status_code=response.status_code, data=data)

        try:
            return Workspace.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise WorkspaceAPIError(f"Invalid workspace response: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> WorkspaceClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
