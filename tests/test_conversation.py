"""Tests for the conversation context block."""

from datetime import datetime

from localagent.conversation import ConversationMessage, build_conversation_context
from localagent.tasks import TaskContext


def _history(n):
    return [
        ConversationMessage(
            "user" if i % 2 == 0 else "assistant",
            f"message {i}",
            timestamp=datetime(2024, 5, 1, 12, 0, i),
        )
        for i in range(n)
    ]


def _task(**overrides):
    values = dict(
        is_multi_step=True,
        task_description="Create a project called demo",
        completed_steps=["Created folder"],
        next_steps=["Add package.json", "Add README"],
        is_complete=False,
    )
    values.update(overrides)
    return TaskContext(**values)


class TestBuildConversationContext:
    def test_empty_history(self):
        assert build_conversation_context([]) == ""
        assert build_conversation_context([], _task()) == ""

    def test_window_keeps_last_ten_oldest_first(self):
        out = build_conversation_context(_history(12))
        assert "message 0\n" not in out
        assert "message 1\n" not in out
        positions = [out.index(f"message {i}\n") for i in range(2, 12)]
        assert positions == sorted(positions)

    def test_custom_window(self):
        out = build_conversation_context(_history(5), window=2)
        assert "message 2" not in out
        assert "message 3" in out
        assert "message 4" in out

    def test_line_format(self):
        msgs = [
            ConversationMessage("user", "hello", timestamp=datetime(2024, 1, 1, 9, 5, 7)),
            ConversationMessage(
                "assistant",
                "made it",
                timestamp=datetime(2024, 1, 1, 9, 5, 9),
                tool_used="mcp__fs__create_directory",
            ),
        ]
        out = build_conversation_context(msgs)
        assert out.startswith("\n\nCONVERSATION HISTORY:\n")
        assert "[09:05:07] USER: hello\n" in out
        assert "[09:05:09] ASSISTANT: made it\n" in out
        assert "[09:05:09] TOOL_USED: mcp__fs__create_directory\n" in out

    def test_active_task_block(self):
        out = build_conversation_context(_history(1), _task())
        assert "CURRENT TASK CONTEXT:" in out
        assert "Task: Create a project called demo" in out
        assert "Completed Steps: Created folder" in out
        assert "Next Steps: Add package.json, Add README" in out

    def test_no_task_block_when_complete(self):
        out = build_conversation_context(_history(1), _task(is_complete=True))
        assert "CURRENT TASK CONTEXT" not in out

    def test_no_task_block_when_not_multi_step(self):
        out = build_conversation_context(_history(1), _task(is_multi_step=False))
        assert "CURRENT TASK CONTEXT" not in out
