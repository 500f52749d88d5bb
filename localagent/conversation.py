"""Conversation history and the context block appended to each prompt."""

from dataclasses import dataclass, field
from datetime import datetime

from .tasks import TaskContext

DEFAULT_CONTEXT_WINDOW = 10


@dataclass
class ConversationMessage:
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    tool_used: str | None = None


def build_conversation_context(
    history: list[ConversationMessage],
    task_context: TaskContext | None = None,
    window: int = DEFAULT_CONTEXT_WINDOW,
) -> str:
    """Render recent turns plus the live task as plain text.

    Returns "" when there is no history. The task block is only added for a
    task that is active and not complete. The result is advisory text, it is
    never parsed back.
    """
    if not history:
        return ""

    recent = history[-window:] if window > 0 else []
    lines = ["", "", "CONVERSATION HISTORY:"]
    for msg in recent:
        time_str = msg.timestamp.strftime("%H:%M:%S")
        lines.append(f"[{time_str}] {msg.role.upper()}: {msg.content}")
        if msg.tool_used:
            lines.append(f"[{time_str}] TOOL_USED: {msg.tool_used}")

    if task_context and task_context.is_multi_step and not task_context.is_complete:
        lines.append("")
        lines.append("CURRENT TASK CONTEXT:")
        lines.append(f"Task: {task_context.task_description}")
        lines.append(f"Completed Steps: {', '.join(task_context.completed_steps)}")
        lines.append(f"Next Steps: {', '.join(task_context.next_steps)}")

    return "\n".join(lines) + "\n"
