"""Terminal output using Rich: diagnostics on stderr, agent replies on stdout."""

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

PREFIX = "[localagent]"

_console = Console(stderr=True)
_out = Console()


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(label: str, token_est: int) -> None:
    _console.print(Rule(f"{label} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def tool_spinner(name: str):
    return _console.status(
        Text(f"  Tool [{name}] is working...", style="yellow"), spinner="dots"
    )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_row(statuses: list[dict]) -> None:
    """One line listing every manifest server, green if loaded, red if not."""
    line = Text("tools: [")
    for i, entry in enumerate(statuses):
        if i:
            line.append(", ")
        style = "green" if entry["status"] == "loaded" else "red"
        line.append(entry["name"], style=style)
    line.append("]")
    _console.print(line)


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(Text(f"  MCP server {name!r}: {tool_count} tools", style="dim"))


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ✗ MCP server {name!r}: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def agent_response(agent_name: str, text: str) -> None:
    """Render a reply as markdown on stdout, prefixed with the agent name."""
    _out.print()
    _out.print(Text(f"{agent_name}>", style="bold yellow"))
    _out.print(Markdown(text))


# -- Task progress -----------------------------------------------------------


def task_started(description: str) -> None:
    line = Text()
    line.append("  ◆ Task started: ", style="bold cyan")
    line.append(description[:120], style="cyan")
    _console.print(line)


def task_continuing(step: int) -> None:
    _console.print(
        Text(f"  ↻ Continuing task automatically (step {step})", style="yellow")
    )


def task_complete(reason: str | None, steps: int) -> None:
    msg = f"  ✓ Task completed after {steps} steps"
    if reason:
        msg += f": {reason}"
    _console.print(Text(msg, style="bold green"))


def task_status(lines: list[str]) -> None:
    for line in lines:
        _console.print(Text(f"  {line}", style="cyan"))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str, context: str | None = None) -> None:
    line = Text()
    line.append(f"{PREFIX} Error: ", style="bold red")
    line.append(msg, style="red")
    if context:
        line.append(f" ({context})", style="red")
    _console.print(line)


def banner(agent_name: str) -> None:
    _console.print(Text(f"{agent_name} CLI", style="bold"))


def repl_banner(agent_name: str) -> None:
    _console.print(
        Text(
            f"Type your prompt for {agent_name} (/help for commands, Ctrl-D to exit).",
            style="dim",
        )
    )
