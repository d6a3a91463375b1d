from __future__ import annotations

import io

import httpx
import pytest
import respx
from loguru import logger

from terminal_connector.cli import (
    ExitCode,
    choose_container,
    exit_code_for,
    main,
    resolve_workspace,
)
from terminal_connector.config import ConnectorConfig
from terminal_connector.exec.session import CloseReason


@pytest.fixture(autouse=True)
def reset_logging():
    """``main`` installs a stderr sink; drop it so it does not outlive capsys."""
    yield
    logger.remove()


@pytest.fixture
def cli_env(mock_env_clear, monkeypatch, descriptor_file):
    monkeypatch.setenv("MACHINE_EXEC_URL", "ws://localhost:3333")
    monkeypatch.setenv("DEVWORKSPACE_DESCRIPTOR", descriptor_file)
    monkeypatch.setenv("TERMINAL_CONNECTOR_TIMEOUT", "1")


class FakeTerminal:
    """Stands in for the interactive loop and records the sessions it runs."""

    def __init__(self) -> None:
        self.calls: list[tuple[object, str | None]] = []
        self.reason = CloseReason.EXITED

    async def __call__(self, session, *, title=None):
        await session.wait_open()
        self.calls.append((session, title))
        await session.close()
        return self.reason


@pytest.fixture
def fake_terminal(monkeypatch) -> FakeTerminal:
    terminal = FakeTerminal()
    monkeypatch.setattr("terminal_connector.cli.run_interactive_session", terminal)
    monkeypatch.setattr("terminal_connector.cli.get_terminal_size", lambda: (100, 40))
    return terminal


class TestExitCodes:
    @pytest.mark.parametrize(
        "reason,code",
        [
            (CloseReason.EXITED, ExitCode.SUCCESS),
            (CloseReason.DISCONNECTED, ExitCode.SUCCESS),
            (CloseReason.LOCAL, ExitCode.LOCAL_QUIT),
            (CloseReason.ERROR, ExitCode.ERROR),
        ],
    )
    def test_exit_code_for(self, reason, code) -> None:
        assert exit_code_for(reason) is code


class TestChooseContainer:
    def test_single_candidate_needs_no_prompt(self) -> None:
        def never(prompt):
            raise AssertionError("prompted")

        assert choose_container(["app"], input_fn=never) == "app"

    def test_pick_by_number(self) -> None:
        output = io.StringIO()

        assert choose_container(["app", "db"], input_fn=lambda _: "2", output=output) == "db"
        assert "select machine." in output.getvalue()
        assert "1) app" in output.getvalue()

    def test_pick_by_name(self) -> None:
        chosen = choose_container(["app", "db"], input_fn=lambda _: "app", output=io.StringIO())

        assert chosen == "app"

    def test_invalid_answer_asks_again(self) -> None:
        answers = iter(["7", "x", "1"])
        output = io.StringIO()

        chosen = choose_container(["app", "db"], input_fn=lambda _: next(answers), output=output)

        assert chosen == "app"
        assert output.getvalue().count("Please enter a number") == 2

    @pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
    def test_cancel(self, error) -> None:
        def cancel(prompt):
            raise error

        assert choose_container(["app", "db"], input_fn=cancel, output=io.StringIO()) is None

    def test_empty_answer_cancels(self) -> None:
        assert choose_container(["app", "db"], input_fn=lambda _: "", output=io.StringIO()) is None


class TestResolveWorkspace:
    @pytest.mark.asyncio
    async def test_without_api_config_is_unchanged(self, session_id_config) -> None:
        config, machines = await resolve_workspace(session_id_config)

        assert config is session_id_config
        assert machines is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_exec_url_from_workspace_runtime(self, mock_token) -> None:
        respx.get("https://che.example.com/api/workspace/workspace123").mock(
            return_value=httpx.Response(
                200,
                json={
                    "id": "workspace123",
                    "runtime": {
                        "machines": {
                            "tools": {},
                            "che-machine-exec-abc": {
                                "servers": {"che-machine-exec": {"url": "wss://exec.example.com"}}
                            },
                        }
                    },
                },
            )
        )
        base = ConnectorConfig(
            api_url="https://che.example.com/api", workspace_id="workspace123", token=mock_token
        )

        config, machines = await resolve_workspace(base)

        assert config.server_url == "wss://exec.example.com"
        assert machines == ["tools", "che-machine-exec-abc"]


class TestMain:
    def test_unknown_dialect(self, mock_env_clear, monkeypatch, capsys) -> None:
        monkeypatch.setenv("TERMINAL_CONNECTOR_DIALECT", "carrier-pigeon")

        assert main([]) == ExitCode.CONFIG_ERROR
        assert "Unknown dialect" in capsys.readouterr().err

    def test_connection_dialect_requires_credential(
        self, cli_env, monkeypatch, exec_server, capsys
    ) -> None:
        monkeypatch.setenv("TERMINAL_CONNECTOR_DIALECT", "connection")

        assert main(["--container", "app"]) == ExitCode.CONFIG_ERROR
        assert "Missing credential" in capsys.readouterr().err
        assert exec_server.sockets == []

    def test_list(self, cli_env, exec_server, capsys) -> None:
        assert main(["--list"]) == ExitCode.SUCCESS

        assert capsys.readouterr().out.splitlines() == ["app", "db"]

    def test_missing_descriptor(self, cli_env, monkeypatch, exec_server, tmp_path, capsys) -> None:
        monkeypatch.setenv("DEVWORKSPACE_DESCRIPTOR", str(tmp_path / "absent.yaml"))

        assert main(["--list"]) == ExitCode.CONFIG_ERROR
        assert "absent.yaml" in capsys.readouterr().err
        assert exec_server.sockets == []

    @respx.mock
    def test_workspace_machines_without_descriptor(
        self, cli_env, monkeypatch, exec_server, tmp_path, capsys
    ) -> None:
        monkeypatch.setenv("DEVWORKSPACE_DESCRIPTOR", str(tmp_path / "absent.yaml"))
        monkeypatch.setenv("CHE_API", "https://che.example.com/api")
        monkeypatch.setenv("CHE_WORKSPACE_ID", "workspace123")
        respx.get("https://che.example.com/api/workspace/workspace123").mock(
            return_value=httpx.Response(
                200,
                json={"id": "workspace123", "runtime": {"machines": {"db": {}, "tools": {}}}},
            )
        )

        assert main(["--list"]) == ExitCode.SUCCESS
        assert capsys.readouterr().out.splitlines() == ["db"]
        assert exec_server.paths() == ["/connect"]

    def test_server_unreachable(self, cli_env, exec_server, capsys) -> None:
        exec_server.refuse = ConnectionRefusedError("connection refused")

        assert main(["--list"]) == ExitCode.ERROR
        assert "connection refused" in capsys.readouterr().err

    def test_no_candidates(self, cli_env, exec_server, capsys) -> None:
        exec_server.running = ["che-gateway"]

        assert main([]) == ExitCode.NO_CONTAINERS
        assert "No containers" in capsys.readouterr().err

    def test_unknown_container(self, cli_env, exec_server, capsys) -> None:
        assert main(["--container", "che-gateway"]) == ExitCode.NO_CONTAINERS
        assert "app, db" in capsys.readouterr().err

    def test_open_terminal(self, cli_env, exec_server, fake_terminal) -> None:
        code = main(["--container", "db", "--command", "psql", "--cwd", "/tmp"])

        assert code == ExitCode.SUCCESS
        [(_, title)] = fake_terminal.calls
        assert title == "db"
        assert exec_server.paths() == ["/connect", "/attach/31"]
        create = [m for m in exec_server.sockets[0].sent_json() if m["method"] == "create"]
        assert create[0]["params"]["cmd"] == ["sh", "-c", "psql"]
        assert create[0]["params"]["cwd"] == "/tmp"
        assert (create[0]["params"]["cols"], create[0]["params"]["rows"]) == (100, 40)
        assert exec_server.sockets[0].close_calls == 1

    def test_local_quit_exit_code(self, cli_env, exec_server, fake_terminal) -> None:
        fake_terminal.reason = CloseReason.LOCAL

        assert main(["--container", "app"]) == ExitCode.LOCAL_QUIT

    def test_connection_dialect_opens_container_connection(
        self, cli_env, monkeypatch, exec_server, fake_terminal, mock_token
    ) -> None:
        monkeypatch.setenv("TERMINAL_CONNECTOR_DIALECT", "connection")
        monkeypatch.setenv("MACHINE_EXEC_URL", "wss://gateway.example.com/ws-123/exec")
        monkeypatch.setenv("CHE_MACHINE_TOKEN", mock_token)
        exec_server.create_result = None

        assert main(["--container", "db"]) == ExitCode.SUCCESS
        assert exec_server.paths() == ["/ws-123/exec/db"]
        assert exec_server.sockets[0].sent_json()[0]["method"] == "exec"
