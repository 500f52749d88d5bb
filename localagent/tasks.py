"""Multi-step task tracking and auto-continuation heuristics.

The decisions here are keyword matches over model output, not semantic
understanding. All pattern lists are plain data on TaskPatterns so they can
be tuned from config and tested without touching control flow.
"""

import re
from dataclasses import dataclass, field, fields
from enum import Enum

MULTI_STEP_KEYWORDS = (
    "create", "build", "setup", "make", "develop", "implement", "generate",
    "react app", "project", "application", "website", "api", "server",
    "all files", "complete", "full", "entire", "whole",
)

CONTINUATION_PHRASES = (
    "created folder", "created directory", "made folder",
    "next step", "continue", "now i will", "now i need to",
    "next i need to", "partially complete", "still need", "remaining",
    "created basic", "initial setup", "first step",
    "proceeding", "moving on", "next logical step",
    "will now", "let me", "i will create", "i will add",
    "setting up", "configuring", "installing",
    "let me now", "i should", "i need to",
)

STRONG_COMPLETION_PHRASES = (
    "task complete", "task is complete", "task is now complete",
    "project is complete", "setup is complete", "ready to run",
    "you can now use", "everything is set up", "application is now ready",
    "all files created", "fully functional",
)

WEAK_COMPLETION_PHRASES = (
    "finished", "done", "ready to use", "successfully created",
    "have successfully", "is now fully", "completed the", "you can now",
    "everything needed", "all necessary files", "all set up",
)

STOPPING_PHRASES = (
    "that completes", "this finishes", "no further steps",
    "that's all", "that’s all", "nothing more", "all done",
    "no additional", "task finished", "work is complete",
)

CONTINUATION_TOOLS = ("create_directory", "write_file", "edit_file")

PROJECT_KEYWORDS = ("create", "build", "setup")

ACCOMPLISHMENT_VERBS = ("created", "added", "installed", "configured")

NEXT_STEP_MARKERS = ("next step", "next, i will")

_NEXT_STEP_MARKER_RE = re.compile(r"next steps?:?|next, i will", re.IGNORECASE)

DEFAULT_PROJECT_PLAN = (
    "Create project directory",
    "Initialize configuration files",
    "Set up basic structure",
    "Install dependencies",
)


class TaskState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    AWAITING_TOOL = "awaiting_tool"
    COMPLETED = "completed"
    FAILED = "failed"


_ACTIVE_STATES = {TaskState.STARTING, TaskState.IN_PROGRESS, TaskState.AWAITING_TOOL}


@dataclass
class TaskContext:
    """Snapshot of the live task, used to build prompt context."""

    is_multi_step: bool
    task_description: str
    completed_steps: list[str]
    next_steps: list[str]
    is_complete: bool


@dataclass
class CompletionStatus:
    is_complete: bool
    step_count: int
    reason: str | None = None


@dataclass
class TaskLimits:
    """Safety valves. Defaults match the long-standing behavior."""

    max_steps: int = 50
    max_responses_without_tools: int = 5
    max_file_tool_calls: int = 5


def _default(values):
    return field(default_factory=lambda: list(values))


@dataclass
class TaskPatterns:
    multi_step_keywords: list[str] = _default(MULTI_STEP_KEYWORDS)
    continuation_phrases: list[str] = _default(CONTINUATION_PHRASES)
    strong_completion_phrases: list[str] = _default(STRONG_COMPLETION_PHRASES)
    weak_completion_phrases: list[str] = _default(WEAK_COMPLETION_PHRASES)
    stopping_phrases: list[str] = _default(STOPPING_PHRASES)
    continuation_tools: list[str] = _default(CONTINUATION_TOOLS)
    project_keywords: list[str] = _default(PROJECT_KEYWORDS)
    accomplishment_verbs: list[str] = _default(ACCOMPLISHMENT_VERBS)
    next_step_markers: list[str] = _default(NEXT_STEP_MARKERS)

    def extend(self, extra: dict[str, list[str]]) -> None:
        """Append extra entries to the named lists, skipping duplicates."""
        names = {f.name for f in fields(self)}
        for key, values in extra.items():
            if key not in names:
                raise KeyError(key)
            target = getattr(self, key)
            for value in values:
                value = value.lower()
                if value not in target:
                    target.append(value)


def _contains_any(text: str, patterns) -> bool:
    return any(p in text for p in patterns)


class TaskManager:
    """Tracks the single live multi-step task.

    Starting a task while another one is live silently discards the old
    one: there is no queue and no nesting. No method raises on odd input;
    empty or non-string responses simply match nothing.
    """

    def __init__(
        self, patterns: TaskPatterns | None = None, limits: TaskLimits | None = None
    ):
        self.patterns = patterns or TaskPatterns()
        self.limits = limits or TaskLimits()
        self.state = TaskState.IDLE
        self.task_description = ""
        self.completed_steps: list[str] = []
        self.next_steps: list[str] = []
        self.tool_history: list[tuple[str, bool]] = []
        self.step_count = 0
        self.responses_without_tools = 0
        self.file_tool_calls = 0
        self.completion_reason: str | None = None

    # -- Classification -------------------------------------------------------

    def is_multi_step_task(self, prompt: str) -> bool:
        lower = _lower(prompt)
        return _contains_any(lower, self.patterns.multi_step_keywords)

    def is_task_active(self) -> bool:
        return self.state in _ACTIVE_STATES

    def _is_project_task(self) -> bool:
        return _contains_any(
            self.task_description.lower(), self.patterns.project_keywords
        )

    def _is_continuation_tool(self, tool_name: str | None) -> bool:
        if not tool_name:
            return False
        lower = tool_name.lower()
        return any(t in lower for t in self.patterns.continuation_tools)

    # -- Lifecycle ------------------------------------------------------------

    def start_task(self, description: str) -> None:
        if self.state is not TaskState.IDLE:
            self.reset_task()

        self.task_description = description
        self.state = TaskState.STARTING
        self.step_count = 0

        lower = description.lower()
        if "create" in lower and ("project" in lower or "application" in lower):
            self.next_steps = list(DEFAULT_PROJECT_PLAN)

        self.state = TaskState.IN_PROGRESS

    def reset_task(self) -> None:
        self.state = TaskState.IDLE
        self.task_description = ""
        self.completed_steps = []
        self.next_steps = []
        self.tool_history = []
        self.step_count = 0
        self.responses_without_tools = 0
        self.file_tool_calls = 0
        self.completion_reason = None

    def force_complete(self, reason: str | None = None) -> None:
        self.state = TaskState.COMPLETED
        self.completion_reason = reason or "Completed manually"

    def fail_task(self, reason: str) -> None:
        if self.is_task_active():
            self.state = TaskState.FAILED
            self.completion_reason = reason

    def _complete(self, reason: str) -> None:
        self.state = TaskState.COMPLETED
        self.completion_reason = reason

    # -- Updates --------------------------------------------------------------

    def record_tool_use(self, tool_name: str, result=None) -> None:
        if not self.is_task_active():
            return
        is_error = bool(result.get("isError")) if isinstance(result, dict) else False
        self.tool_history.append((tool_name, is_error))
        if not is_error and self._is_continuation_tool(tool_name):
            self.file_tool_calls += 1
        if self.state is TaskState.IN_PROGRESS:
            self.state = TaskState.AWAITING_TOOL

    def process_response(self, response: str | None, tool_used: str | None = None) -> None:
        if not self.is_task_active():
            return

        text = _text(response)
        self.step_count += 1
        if tool_used:
            self.responses_without_tools = 0
        else:
            self.responses_without_tools += 1

        if self.state is TaskState.AWAITING_TOOL:
            self.state = TaskState.IN_PROGRESS

        self._update_progress(text)

        if self.step_count >= self.limits.max_steps:
            self._complete(f"Reached maximum steps ({self.limits.max_steps})")
            return

        if (
            self.responses_without_tools >= self.limits.max_responses_without_tools
            and self._has_completion_signal(text)
        ):
            self._complete(
                f"No tool usage for {self.limits.max_responses_without_tools} responses"
            )
            return

        if self._is_task_complete(text, tool_used):
            self._complete("Task marked as complete")

    def _update_progress(self, text: str) -> None:
        accomplishment = self._extract_accomplishment(text)
        if accomplishment:
            self.completed_steps.append(accomplishment)
            done = accomplishment.lower()
            for step in self.next_steps:
                if done in step.lower():
                    self.next_steps.remove(step)
                    break
        self.next_steps.extend(self._extract_next_steps(text))

    def _extract_accomplishment(self, text: str) -> str | None:
        for line in text.split("\n"):
            if _contains_any(line.lower(), self.patterns.accomplishment_verbs):
                return line.strip()
        return None

    def _extract_next_steps(self, text: str) -> list[str]:
        steps = []
        in_section = False
        for line in text.split("\n"):
            lower = line.lower()
            if _contains_any(lower, self.patterns.next_step_markers):
                in_section = True
                fragment = _NEXT_STEP_MARKER_RE.sub("", line, count=1).strip()
                if fragment:
                    steps.append(fragment)
                continue
            if not in_section:
                continue
            if not lower.strip() or "done" in lower:
                in_section = False
                continue
            steps.append(line.strip())
        return steps

    # -- Decisions ------------------------------------------------------------

    def _has_completion_signal(self, text: str) -> bool:
        lower = text.lower()
        return (
            _contains_any(lower, self.patterns.stopping_phrases)
            or _contains_any(lower, self.patterns.strong_completion_phrases)
            or _contains_any(lower, self.patterns.weak_completion_phrases)
        )

    def _is_task_complete(self, text: str, tool_used: str | None) -> bool:
        lower = text.lower()
        if _contains_any(lower, self.patterns.stopping_phrases):
            return True
        if _contains_any(lower, self.patterns.strong_completion_phrases):
            return True
        if _contains_any(lower, self.patterns.weak_completion_phrases):
            # A file write mid-build often reads "done" or "successfully created".
            if self._is_continuation_tool(tool_used):
                return False
            if _contains_any(lower, self.patterns.continuation_phrases):
                return False
            return True
        return False

    def should_continue_automatically(
        self, response: str | None, tool_used: str | None = None
    ) -> bool:
        if not self.is_task_active():
            return False
        if self.step_count >= self.limits.max_steps:
            return False
        if self.responses_without_tools >= self.limits.max_responses_without_tools:
            return False

        text = _text(response)
        lower = text.lower()
        if _contains_any(lower, self.patterns.stopping_phrases):
            return False
        if self._is_task_complete(text, tool_used):
            return False

        if self._is_continuation_tool(tool_used):
            return True
        if _contains_any(lower, self.patterns.continuation_phrases):
            return True
        if (
            tool_used
            and self._is_project_task()
            and self.file_tool_calls < self.limits.max_file_tool_calls
        ):
            return True
        return False

    # -- Introspection --------------------------------------------------------

    def get_completion_status(self) -> CompletionStatus:
        if self.state is TaskState.COMPLETED:
            return CompletionStatus(
                True, self.step_count, self.completion_reason or "Task marked as complete"
            )
        if self.step_count >= self.limits.max_steps:
            return CompletionStatus(
                True, self.step_count, f"Reached maximum steps ({self.limits.max_steps})"
            )
        if self.state is TaskState.FAILED:
            return CompletionStatus(False, self.step_count, self.completion_reason)
        return CompletionStatus(False, self.step_count)

    def get_task_context(self) -> TaskContext:
        return TaskContext(
            is_multi_step=self.is_task_active(),
            task_description=self.task_description,
            completed_steps=list(self.completed_steps),
            next_steps=list(self.next_steps),
            is_complete=self.state is TaskState.COMPLETED,
        )

    # -- Tuning ---------------------------------------------------------------

    def add_continuation_pattern(self, pattern: str) -> None:
        self.patterns.extend({"continuation_phrases": [pattern]})

    def add_completion_pattern(self, pattern: str) -> None:
        self.patterns.extend({"strong_completion_phrases": [pattern]})

    def add_continuation_tool(self, tool: str) -> None:
        self.patterns.extend({"continuation_tools": [tool]})


def _text(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _lower(value) -> str:
    return _text(value).lower()
