"""Append-only markdown transcript of a session (memory/session-*.md)."""

from datetime import datetime
from pathlib import Path

from . import fmt
from .errors import ConfigError

MAX_RESULT_LOG = 2000


def session_filename(now: datetime) -> str:
    stamp = now.isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
    return f"session-{stamp}.md"


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class SessionLog:
    """Write-only sink for one session. Never read back by the agent.

    Write failures only produce a warning: losing a transcript line must
    not abort a turn.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.closed = False

    @classmethod
    def create(
        cls,
        memory_dir: Path,
        agent_name: str,
        tool_status: list[dict],
        now: datetime | None = None,
    ) -> "SessionLog":
        now = now or datetime.now()
        memory_dir = Path(memory_dir)
        log = cls(memory_dir / session_filename(now))

        lines = [
            f"# {agent_name} Session – {now.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "## Tools Loaded",
            "",
        ]
        for entry in tool_status:
            if entry["status"] == "loaded":
                lines.append(f"- {entry['name']}: ✅ loaded ({entry.get('tools', 0)} tools)")
            else:
                lines.append(f"- {entry['name']}: ❌ failed ({entry.get('error')})")
        if not tool_status:
            lines.append("- (none)")
        lines.extend(["", ""])
        try:
            memory_dir.mkdir(parents=True, exist_ok=True)
            log.path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot create session log in {memory_dir}: {e}") from e
        return log

    def _append(self, heading: str, body: str) -> None:
        if self.closed:
            return
        entry = f"## {heading} ({_stamp()})\n\n{body}\n\n"
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(entry)
        except OSError as e:
            fmt.warning(f"failed to write session log entry: {e}")

    def log_user_prompt(self, prompt: str) -> None:
        self._append("User", prompt)

    def log_tool_used(self, tool_name: str, result: str | None = None) -> None:
        body = tool_name
        if result:
            if len(result) > MAX_RESULT_LOG:
                result = result[:MAX_RESULT_LOG] + "\n... (truncated)"
            body += f"\n\n```\n{result}\n```"
        self._append("Tool Used", body)

    def log_agent_response(self, response: str) -> None:
        self._append("Agent", response)

    def log_agent_error(self, message: str) -> None:
        self._append("Agent (error)", message)

    def close(self) -> None:
        """Write the closing marker. Idempotent."""
        if self.closed:
            return
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(f"---\n\n*Session ended {_stamp()}*\n")
        except OSError as e:
            fmt.warning(f"failed to close session log: {e}")
        self.closed = True
