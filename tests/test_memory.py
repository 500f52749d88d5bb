"""Tests for the markdown session log."""

from datetime import datetime

import pytest

from localagent.errors import ConfigError
from localagent.memory import MAX_RESULT_LOG, SessionLog, session_filename


class TestSessionFilename:
    def test_no_colons_or_dots(self):
        name = session_filename(datetime(2024, 5, 1, 13, 4, 5, 123000))
        assert name == "session-2024-05-01T13-04-05-123.md"


class TestSessionLog:
    def _log(self, tmp_path, statuses=None):
        return SessionLog.create(
            tmp_path / "memory",
            "demo",
            statuses if statuses is not None else [],
            now=datetime(2024, 5, 1, 13, 4, 5),
        )

    def test_header(self, tmp_path):
        log = self._log(
            tmp_path,
            [
                {"name": "filesystem", "status": "loaded", "tools": 11},
                {"name": "memory", "status": "failed", "error": "spawn uvx ENOENT"},
            ],
        )
        text = log.path.read_text()
        assert log.path.parent == tmp_path / "memory"
        assert text.startswith("# demo Session – 2024-05-01 13:04:05")
        assert "- filesystem: ✅ loaded (11 tools)" in text
        assert "- memory: ❌ failed (spawn uvx ENOENT)" in text

    def test_header_without_tools(self, tmp_path):
        assert "- (none)" in self._log(tmp_path).path.read_text()

    def test_entries_in_order(self, tmp_path):
        log = self._log(tmp_path)
        log.log_user_prompt("Create a project")
        log.log_tool_used("mcp__fs__create_directory", "Created demo")
        log.log_agent_response("I created the folder.")
        log.log_agent_error("text generation: timed out")
        text = log.path.read_text()
        positions = [
            text.index("## User ("),
            text.index("## Tool Used ("),
            text.index("## Agent ("),
            text.index("## Agent (error)"),
        ]
        assert positions == sorted(positions)
        assert "```\nCreated demo\n```" in text

    def test_long_tool_result_truncated(self, tmp_path):
        log = self._log(tmp_path)
        log.log_tool_used("t", "x" * (MAX_RESULT_LOG + 50))
        text = log.path.read_text()
        assert "x" * MAX_RESULT_LOG in text
        assert "x" * (MAX_RESULT_LOG + 1) not in text
        assert "(truncated)" in text

    def test_close_idempotent(self, tmp_path):
        log = self._log(tmp_path)
        log.close()
        log.close()
        log.log_user_prompt("after close")
        text = log.path.read_text()
        assert text.count("Session ended") == 1
        assert "after close" not in text

    def test_write_failure_only_warns(self, tmp_path, capsys):
        log = self._log(tmp_path)
        log.path.unlink()
        log.path.mkdir()
        log.log_user_prompt("hello")
        assert "failed to write session log entry" in capsys.readouterr().err

    def test_unwritable_memory_dir_raises_config_error(self, tmp_path):
        (tmp_path / "memory").write_text("not a directory")
        with pytest.raises(ConfigError, match="cannot create session log"):
            self._log(tmp_path)
