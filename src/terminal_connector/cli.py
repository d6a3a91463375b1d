"""Command line entry point.

Usage:
    terminal-connector                       # pick a container, open a shell
    terminal-connector --container app       # open a shell in "app"
    terminal-connector --command "top"       # run a command instead of a shell
    terminal-connector --list                # print candidate containers
    terminal-connector --attach ws://host/attach/7   # attach to a session URL
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable, Sequence
from dataclasses import replace
from enum import IntEnum
from typing import TextIO

from loguru import logger

from .config import ConnectorConfig
from .directory import ContainerDirectory
from .errors import ConfigurationError, TerminalConnectorError
from .exec.control import ControlChannel
from .exec.endpoint import Endpoint
from .exec.session import CloseReason, TerminalSession
from .log import configure_logging
from .shell import get_terminal_size, run_interactive_session
from .workspace import WorkspaceClient


class ExitCode(IntEnum):
    SUCCESS = 0  # Remote session ended
    ERROR = 1
    NO_CONTAINERS = 2
    CONFIG_ERROR = 78
    LOCAL_QUIT = 130  # User quit


def exit_code_for(reason: CloseReason) -> ExitCode:
    if reason is CloseReason.LOCAL:
        return ExitCode.LOCAL_QUIT
    if reason is CloseReason.ERROR:
        return ExitCode.ERROR
    return ExitCode.SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terminal-connector",
        description="Open an interactive terminal in a workspace container.",
    )
    parser.add_argument("--container", "-c", help="container to open the terminal in")
    parser.add_argument("--command", help="command line to run instead of the default shell")
    parser.add_argument("--cwd", help="working directory of the command")
    parser.add_argument("--list", action="store_true", help="print candidate containers and exit")
    parser.add_argument("--attach", metavar="URL", help="attach to an existing session URL")
    parser.add_argument("--log-level", help="log level (default: TERMINAL_CONNECTOR_LOG_LEVEL)")
    return parser


def choose_container(
    names: Sequence[str],
    *,
    input_fn: Callable[[str], str] = input,
    output: TextIO | None = None,
) -> str | None:
    """Ask the user to pick one of ``names``.

    Returns:
        The chosen name, or None if the user cancelled.
    """
    out = output or sys.stderr
    if len(names) == 1:
        return names[0]
    print("select machine.", file=out)
    for i, name in enumerate(names, start=1):
        print(f"  {i}) {name}", file=out)
    while True:
        try:
            answer = input_fn("> ").strip()
        except (EOFError, KeyboardInterrupt):
            return None
        if not answer:
            return None
        if answer in names:
            return answer
        if answer.isdigit() and 1 <= int(answer) <= len(names):
            return names[int(answer) - 1]
        print(f"Please enter a number between 1 and {len(names)}.", file=out)


async def resolve_workspace(config: ConnectorConfig) -> tuple[ConnectorConfig, list[str] | None]:
    """Use the workspace API, when configured, to find the exec server.

    Returns:
        The configuration with ``server_url`` resolved, and the workspace
        machine names (None when the API is not configured).
    """
    if not config.api_url or not config.workspace_id:
        return config, None
    async with WorkspaceClient(config.api_url, config.token) as client:
        workspace = await client.get_workspace(config.workspace_id)
    exec_url = workspace.machine_exec_url()
    if exec_url:
        logger.debug("Exec server published at {}", exec_url)
        config = replace(config, server_url=exec_url)
    return config, workspace.machine_names()


def declared_containers(config: ConnectorConfig, machine_names: list[str] | None) -> list[str]:
    """Containers declared by the descriptor, or the workspace machines without one.

    Raises:
        ConfigurationError: If there is no usable descriptor and no workspace
            machine list to fall back on.
    """
    try:
        return ContainerDirectory(config).declared_containers()
    except ConfigurationError:
        if machine_names is None:
            raise
        logger.debug("No descriptor; using workspace machines {}", machine_names)
        return machine_names


async def attach(url: str, config: ConnectorConfig) -> ExitCode:
    try:
        endpoint = Endpoint.from_url(url, token=config.token, token_in_query=config.token_in_query)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    session = TerminalSession.attach(endpoint, open_timeout=config.open_timeout)
    reason = await run_interactive_session(session)
    return exit_code_for(reason)


async def run(args: argparse.Namespace, config: ConnectorConfig) -> ExitCode:
    if args.attach:
        return await attach(args.attach, config)

    if config.dialect.requires_token:
        config.require_token()
    config, machine_names = await resolve_workspace(config)
    declared = declared_containers(config, machine_names)

    control: ControlChannel | None = None
    try:
        if config.dialect.supports_list:
            control = await ControlChannel.connect(config)

        directory = ContainerDirectory(config, control, declared=declared)
        candidates = await directory.candidate_containers()

        if args.list:
            for name in candidates:
                print(name)
            return ExitCode.SUCCESS

        if not candidates:
            print("No containers available to open a terminal in.", file=sys.stderr)
            return ExitCode.NO_CONTAINERS

        if args.container:
            if args.container not in candidates:
                print(
                    f"Container {args.container!r} is not available. "
                    f"Choose one of: {', '.join(candidates)}",
                    file=sys.stderr,
                )
                return ExitCode.NO_CONTAINERS
            container = args.container
        else:
            container = await asyncio.to_thread(choose_container, candidates)
            if container is None:
                return ExitCode.LOCAL_QUIT

        if control is None:
            control = await ControlChannel.connect(config, container=container)

        cols, rows = get_terminal_size()
        session = await control.create_session(container, args.command, args.cwd, cols, rows)
        reason = await run_interactive_session(session, title=container)
        return exit_code_for(reason)
    finally:
        if control is not None:
            await control.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the terminal connector.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    try:
        config = ConnectorConfig.from_env()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.CONFIG_ERROR

    configure_logging(args.log_level or config.log_level)

    try:
        return asyncio.run(run(args, config))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.CONFIG_ERROR
    except TerminalConnectorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return ExitCode.ERROR
    except KeyboardInterrupt:
        return ExitCode.LOCAL_QUIT
