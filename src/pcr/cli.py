from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from poly_code_runner import ExecutionHandler, ExecutionOrchestrator, RunnerSettings
from poly_code_runner.api import create_app
from poly_code_runner.environments import (
    DEFAULT_SEED_ENVIRONMENTS,
    Environment,
    EnvironmentManager,
    EnvironmentService,
    JsonEnvironmentStore,
    StartupVerifier,
)
from poly_code_runner.errors import EnvironmentNotFound
from poly_code_runner.execution import SubprocessRunner, supported_languages
from poly_code_runner.execution.toolchains import probe_toolchains
from poly_code_runner.log import configure_logging

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m pcr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser for the execution service.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m pcr",
        description=(
            "poly-code-runner CLI\n"
            "Serve the execution API, run snippets locally,\n"
            "and manage durable Python environments."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m pcr serve --port 8000\n"
            "  python -m pcr run --language ruby hello.rb\n"
            "  python -m pcr languages\n"
            "  python -m pcr envs list\n"
            "  python -m pcr envs create data -p numpy -p pandas\n"
            "  python -m pcr envs verify"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a TOML settings file ([runner] table).\n"
            "Missing keys fall back to built-in defaults."
        ),
    )
    parser.add_argument(
        "--env-dir",
        help="Base directory for environment installs (overrides config and PYTHON_ENV_DIR).",
    )
    parser.add_argument(
        "--store",
        help="Path to the JSON environment metadata file (overrides config).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Start the HTTP API.",
        description=(
            "Start the HTTP API with uvicorn.\n"
            "Environments are verified once at startup."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")

    run_cmd = sub.add_parser(
        "run",
        help="Execute one source file and print its output.",
        description=(
            "Execute a source file exactly as POST /api/execute would.\n"
            "Use '-' to read the source from standard input."
        ),
        epilog=(
            "Examples:\n"
            "  python -m pcr run --language python script.py\n"
            "  python -m pcr run --language java Hello.java --timeout 10000\n"
            "  python -m pcr run --language python --env 4f1c script.py --input data.txt"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("source", help="Source file path, or '-' for stdin.")
    run_cmd.add_argument(
        "--language",
        "-l",
        required=True,
        choices=[lang.value for lang in supported_languages()],
        help="Source language.",
    )
    run_cmd.add_argument("--timeout", type=int, help="Timeout in milliseconds.")
    run_cmd.add_argument("--input", help="File whose contents are fed to the program's stdin.")
    run_cmd.add_argument("--env", help="Python environment id (python only).")

    sub.add_parser(
        "languages",
        help="Show which language toolchains are available.",
        description="Probe PATH for every supported language's toolchain.",
        formatter_class=_HELP_FORMATTER,
    )

    envs_cmd = sub.add_parser(
        "envs",
        help="Manage durable Python environments.",
        description=(
            "Environment commands operate on the configured store and env dir.\n"
            "Install work runs in the foreground and the command waits for it."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    envs_sub = envs_cmd.add_subparsers(
        dest="action",
        required=True,
        parser_class=_RichArgumentParser,
    )
    envs_sub.add_parser(
        "list",
        help="List environments.",
        description="Show every environment with its install state.",
        formatter_class=_HELP_FORMATTER,
    )
    create_env = envs_sub.add_parser(
        "create",
        help="Create and install an environment.",
        description="Create an environment and install its packages.",
        formatter_class=_HELP_FORMATTER,
    )
    create_env.add_argument("name")
    create_env.add_argument("--description", help="Free-text description.")
    create_env.add_argument(
        "--package",
        "-p",
        action="append",
        default=[],
        dest="packages",
        help="Package specifier; repeat for several.",
    )
    delete_env = envs_sub.add_parser(
        "delete",
        help="Delete an environment and its directory.",
        description="Delete an environment record and remove its install directory.",
        formatter_class=_HELP_FORMATTER,
    )
    delete_env.add_argument("env_id")
    reinstall_env = envs_sub.add_parser(
        "reinstall",
        help="Rebuild one environment from scratch.",
        description="Remove the install directory and install the package list again.",
        formatter_class=_HELP_FORMATTER,
    )
    reinstall_env.add_argument("env_id")
    verify_env = envs_sub.add_parser(
        "verify",
        help="Check every environment and repair broken ones.",
        description=(
            "Run the startup verification pass now.\n"
            "Broken or unfinished installs are reinstalled."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    verify_env.add_argument(
        "--seed",
        action="store_true",
        help="Create the default environments when the store is empty.",
    )
    for env_parser in (create_env, reinstall_env, verify_env):
        env_parser.add_argument(
            "--wait-seconds",
            type=float,
            default=None,
            help="Give up waiting for installs after this many seconds (default: no limit).",
        )

    return parser


def load_settings(args: argparse.Namespace) -> RunnerSettings:
    """Resolve settings from `--config` plus the path overrides.

    Example:
        ```python
        settings = load_settings(build_parser().parse_args(["languages"]))
        ```
    """
    settings = RunnerSettings.from_file(args.config) if args.config else RunnerSettings()
    overrides: dict[str, Any] = {}
    if args.env_dir:
        overrides["env_dir"] = args.env_dir
    if args.store:
        overrides["store_path"] = args.store
    return replace(settings, **overrides) if overrides else settings


def build_service(settings: RunnerSettings) -> EnvironmentService:
    """Create the environment service backed by the JSON store.

    Example:
        ```python
        service = build_service(RunnerSettings())
        ```
    """
    runner = SubprocessRunner(max_output_bytes=settings.max_output_bytes)
    manager = EnvironmentManager.from_settings(settings, runner=runner)
    return EnvironmentService(
        JsonEnvironmentStore(settings.store_path), manager, max_workers=settings.install_workers
    )


def _print_environments(envs: list[Environment]) -> None:
    """Render environments in a rich table.

    Example:
        ```python
        _print_environments(service.list())
        ```
    """
    table = Table(title="Python Environments")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("State")
    table.add_column("Packages")
    table.add_column("Error")
    for env in envs:
        table.add_row(
            env.id,
            env.name,
            env.install_state.value,
            ", ".join(env.packages),
            env.install_error or "",
        )
    _CONSOLE.print(table)


def _print_languages(settings: RunnerSettings) -> None:
    """Render toolchain availability in a rich table.

    Example:
        ```python
        _print_languages(RunnerSettings())
        ```
    """
    table = Table(title="Language Toolchains")
    table.add_column("Language", style="cyan")
    table.add_column("Commands", style="magenta")
    table.add_column("Available")
    table.add_column("Default Timeout")
    for status in probe_toolchains(settings):
        table.add_row(
            status.language.value,
            " + ".join(status.commands),
            "[green]yes[/green]" if status.available else "[red]no[/red]",
            f"{status.timeout_ms}ms",
        )
    _CONSOLE.print(table)


def _wait(service: EnvironmentService, seconds: float | None) -> bool:
    """Block on background installs with a spinner.

    Example:
        ```python
        finished = _wait(service, 600)
        ```
    """
    with _CONSOLE.status("Installing environments..."):
        finished = service.wait(timeout=seconds)
    if not finished:
        _CONSOLE.print(Panel.fit("Gave up waiting for installs.", style="bold yellow"))
    return finished


def _read_source(path: str) -> str:
    """Read program source from a file or, for '-', from stdin.

    Example:
        ```python
        code = _read_source("hello.rb")
        ```
    """
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _run(args: argparse.Namespace, settings: RunnerSettings) -> int:
    """Execute one snippet through the request handler.

    Example:
        ```python
        code = _run(args, settings)
        ```
    """
    payload: dict[str, Any] = {"code": _read_source(args.source), "language": args.language}
    if args.timeout is not None:
        payload["timeout"] = args.timeout
    if args.input:
        payload["stdin"] = Path(args.input).read_text(encoding="utf-8")
    if args.env:
        payload["environmentRef"] = args.env
    service = build_service(settings)
    try:
        orchestrator = ExecutionOrchestrator(settings, environments=service)
        response = ExecutionHandler(orchestrator, settings).handle(payload)
    finally:
        service.shutdown(wait_for_jobs=False)
    body = response.body
    if response.ok:
        _CONSOLE.print(body["output"], markup=False, highlight=False, end="")
        if body["stderr"]:
            _CONSOLE.print(body["stderr"], markup=False, highlight=False, end="", style="yellow")
        _CONSOLE.print(f"[dim]({body['executionTime']}ms)[/dim]")
        return 0
    _CONSOLE.print(
        Panel.fit(Pretty(body), title=f"{body['error']} ({response.status_code})", border_style="red")
    )
    return 1


def _envs(args: argparse.Namespace, settings: RunnerSettings) -> int:
    """Dispatch `envs` subcommands.

    Example:
        ```python
        code = _envs(args, settings)
        ```
    """
    service = build_service(settings)
    try:
        if args.action == "list":
            _print_environments(service.list())
            return 0
        if args.action == "create":
            env = service.create(args.name, description=args.description, packages=args.packages)
            _wait(service, args.wait_seconds)
            _print_environments([service.get(env.id)])
            return 0 if service.get(env.id).is_installed else 1
        if args.action == "delete":
            service.delete(args.env_id)
            service.wait()
            _CONSOLE.print(Panel.fit(f"Deleted environment {args.env_id}", style="bold green"))
            return 0
        if args.action == "reinstall":
            service.reinstall(args.env_id)
            _wait(service, args.wait_seconds)
            env = service.get(args.env_id)
            _print_environments([env])
            return 0 if env.is_installed else 1
        if args.action == "verify":
            seeds = DEFAULT_SEED_ENVIRONMENTS if args.seed else ()
            summary = StartupVerifier(service, seeds=seeds).run()
            _wait(service, args.wait_seconds)
            _CONSOLE.print(Panel.fit(Pretty(summary), title="Verification", border_style="green"))
            _print_environments(service.list())
            return 0
    except EnvironmentNotFound as exc:
        _CONSOLE.print(Panel.fit(str(exc), style="bold red"))
        return 1
    finally:
        service.shutdown(wait_for_jobs=False)
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `pcr` CLI command handler.

    Example:
        ```python
        code = main(["envs", "list"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        settings = load_settings(args)
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(settings.log_level, json=settings.log_json)

    if args.command == "serve":
        uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
        return 0
    if args.command == "run":
        return _run(args, settings)
    if args.command == "languages":
        _print_languages(settings)
        return 0
    if args.command == "envs":
        return _envs(args, settings)

    parser.error("Unhandled command")
    return 2
