import argparse
import os
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    initialize_project_files,
    export_credentials,
    load_project,
    missing_project_files,
)
from .errors import AgentError
from .memory import SessionLog
from .providers import ProviderRegistry
from .session import Session

HISTORY_FILE = ".localagent_history"


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="localagent",
        description="Interactive agent runner with MCP tools, multi-provider LLM "
        "support and automatic continuation of multi-step tasks.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Project directory holding local-agent.json, mcp-tools.json, "
        "keys.json, system.md and memory/ (default: current directory).",
    )
    parser.add_argument(
        "--model",
        default=None,
        help='Model as "provider/model" (overrides local-agent.json).',
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help="Sampling temperature (overrides local-agent.json).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Model request timeout in seconds (default: 120).",
    )
    parser.add_argument(
        "--no-mcp",
        action="store_true",
        help="Do not start the MCP servers listed in mcp-tools.json.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress turn headers, timing and tool progress.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def ask_yes_no(question: str) -> bool:
    from prompt_toolkit.shortcuts import confirm

    try:
        return confirm(question)
    except (EOFError, KeyboardInterrupt):
        return False


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("localagent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")

    fmt.init(color=args.color, no_color=args.no_color)
    base_dir = Path(args.base_dir)

    missing = missing_project_files(base_dir)
    if missing:
        fmt.warning(f"missing project files in {base_dir}: {', '.join(missing)}")
        if not ask_yes_no("Create them with default content?"):
            fmt.error("cannot start without the project files")
            sys.exit(1)
        created = initialize_project_files(base_dir)
        fmt.info(f"created: {', '.join(created)}")
        fmt.info("edit local-agent.json and keys.json, then start localagent again")
        sys.exit(0)

    try:
        _run_main(args, base_dir)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args, base_dir: Path) -> None:
    verbose = not args.quiet
    project = load_project(base_dir)
    if args.model:
        project.settings["model"] = args.model
    if args.temperature is not None:
        project.settings["temperature"] = args.temperature
    if args.timeout is not None:
        project.settings["request_timeout"] = args.timeout

    export_credentials(project.credentials)

    name = project.agent_name
    fmt.banner(name)

    manager = None
    statuses: list[dict] = []
    if project.mcp_servers and not args.no_mcp:
        from .mcp_client import McpManager

        manager = McpManager(project.mcp_servers, verbose=verbose)
        manager.start()
        statuses = manager.server_status()
        fmt.tool_row(statuses)

    try:
        log = SessionLog.create(project.memory_dir, name, statuses)
        session = Session.from_project(
            project,
            tools=manager,
            log=log,
            registry=ProviderRegistry(),
            verbose=verbose,
        )
        if verbose:
            fmt.model_info(f"model: {project.model}")
        try:
            repl_loop(session, history_path=base_dir / HISTORY_FILE)
        finally:
            log.close()
            fmt.info(f"Session saved to {log.path}")
    finally:
        if manager is not None:
            manager.close()


def repl_loop(session: Session, history_path: Path) -> None:
    """Interactive read-eval-print loop. Ends on /exit, Ctrl-D or Ctrl-C at the prompt."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    os.makedirs(os.path.dirname(os.path.abspath(history_path)), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "You: ")])

    fmt.repl_banner(session.agent_name)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line.lower() in ("/exit", "/quit"):
            break

        try:
            session.process_input(line)
        except KeyboardInterrupt:
            session.tasks.reset_task()
            fmt.warning("interrupted, task aborted.")


if __name__ == "__main__":
    main()
