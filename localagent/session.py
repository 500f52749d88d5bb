"""The session orchestrator: one human turn plus every chained auto-continuation."""

import json
import time
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path

from . import fmt
from .conversation import ConversationMessage, build_conversation_context
from .errors import AgentError, ProviderError
from .providers import ProviderRegistry
from .tasks import TaskManager

TASK_PROMPT_FILE = Path(__file__).parent / "task_prompt.txt"

CONTINUE_PROMPT = (
    "Continue with the next step of the current task. If the task is now "
    "complete, say so explicitly."
)

MAX_PREVIEW = 200


class LoopState(Enum):
    WAITING_FOR_INPUT = "waiting_for_input"
    PROCESSING = "processing"
    AUTO_CONTINUING = "auto_continuing"


@dataclass
class TurnOutcome:
    """What one model turn produced."""

    response: str | None
    tool_used: str | None = None
    error: str | None = None
    completed: bool = False
    should_continue: bool = False


@lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        total += len(enc.encode(m.get("content", "") or ""))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # role and separators, about 4 tokens each
    total += 4 * len(messages)
    return total


def build_system_prompt(base: str) -> str:
    instructions = TASK_PROMPT_FILE.read_text(encoding="utf-8").strip()
    return f"{base}\n\n{instructions}" if base else instructions


def tool_result(name: str, args, result: str, is_error: bool) -> dict:
    return {
        "type": "tool-result",
        "toolName": name,
        "args": args,
        "result": result,
        "isError": is_error,
    }


def build_summary_prompt(results: list[dict]) -> str:
    """Prompt for the tool-free call that turns raw tool output into prose."""
    payload = results[0] if len(results) == 1 else results
    parts = [
        "Here is the result of my last action:",
        "",
        json.dumps(payload, indent=2, default=str),
        "",
    ]
    failed = [r["toolName"] for r in results if r["isError"]]
    if failed:
        parts.append(
            f"The following tool calls FAILED: {', '.join(failed)}. Report the "
            "failure plainly and do not claim the action succeeded."
        )
        parts.append("")
    parts.append(
        "Please describe what happened to the user as if you performed the "
        "action yourself, in natural language. If this is part of a multi-step "
        "task and more work is needed to complete the overall goal, continue "
        "with the next logical step without waiting for user input."
    )
    return "\n".join(parts)


def _help() -> None:
    fmt.task_status(
        [
            "/status    show the current task and conversation state",
            "/complete  mark the current task complete (alias: /done)",
            "/clear     forget conversation history and the current task",
            "/help      show this help",
            "/exit      end the session (alias: /quit, Ctrl-D)",
        ]
    )


class Session:
    """Drives the conversation: prompts in, model and tool calls out.

    Owns the conversation history and the task manager. The tool manager
    only needs ``list_tools()`` and ``call_tool(name, args) -> (text,
    is_error)``; the log needs the ``SessionLog`` entry methods. Both may be
    None.
    """

    def __init__(
        self,
        *,
        model: str,
        system_prompt: str = "",
        credentials: dict[str, str] | None = None,
        registry: ProviderRegistry | None = None,
        tools=None,
        log=None,
        task_manager: TaskManager | None = None,
        agent_name: str = "agent",
        temperature: float | None = None,
        tool_choice: str = "auto",
        request_timeout: float | None = 120,
        context_messages: int = 10,
        verbose: bool = False,
    ):
        self.model = model
        self.system_prompt = build_system_prompt(system_prompt)
        self.credentials = credentials or {}
        self.registry = registry or ProviderRegistry()
        self.tools = tools
        self.log = log
        self.tasks = task_manager or TaskManager()
        self.agent_name = agent_name
        self.temperature = temperature
        self.tool_choice = tool_choice
        self.request_timeout = request_timeout
        self.context_messages = context_messages
        self.verbose = verbose

        self.history: list[ConversationMessage] = []
        self.loop_state = LoopState.WAITING_FOR_INPUT

    @classmethod
    def from_project(cls, project, *, tools=None, log=None, registry=None, verbose=False):
        """Build a session from a loaded ProjectConfig."""
        return cls(
            model=project.model,
            system_prompt=project.system_prompt,
            credentials=project.credentials,
            registry=registry,
            tools=tools,
            log=log,
            task_manager=TaskManager(project.patterns, project.limits),
            agent_name=project.agent_name,
            temperature=project.temperature,
            tool_choice=project.tool_choice,
            request_timeout=project.request_timeout,
            context_messages=project.context_messages,
            verbose=verbose,
        )

    # -- Entry point ----------------------------------------------------------

    def process_input(self, line: str) -> list[TurnOutcome]:
        """Handle one line of user input. Returns the outcome of every model turn run."""
        prompt = line.strip()
        if not prompt or self.handle_command(prompt):
            return []

        self.loop_state = LoopState.PROCESSING
        try:
            outcome = self.run_turn(prompt)
            outcomes = [outcome]
            while outcome.should_continue:
                self.loop_state = LoopState.AUTO_CONTINUING
                if self.verbose:
                    fmt.task_continuing(self.tasks.step_count + 1)
                outcome = self.run_turn(CONTINUE_PROMPT, auto=True)
                outcomes.append(outcome)
        finally:
            self.loop_state = LoopState.WAITING_FOR_INPUT
        return outcomes

    def handle_command(self, line: str) -> bool:
        """Run an in-loop command. Returns False for anything that is not one."""
        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _help()
        elif cmd == "/status":
            fmt.task_status(self.status_lines())
        elif cmd in ("/complete", "/done"):
            if not self.tasks.is_task_active():
                fmt.info("no active task")
                return True
            self.tasks.force_complete("Marked complete by user")
            self._announce_completion()
        elif cmd == "/clear":
            self.history.clear()
            self.tasks.reset_task()
            fmt.info("conversation history and task cleared")
        else:
            return False
        return True

    def status_lines(self) -> list[str]:
        tasks = self.tasks
        lines = [f"task state: {tasks.state.value}"]
        if tasks.task_description:
            lines.append(f"task: {tasks.task_description}")
            lines.append(f"steps: {tasks.step_count}/{tasks.limits.max_steps}")
            lines.append(f"tool calls: {len(tasks.tool_history)}")
            if tasks.completed_steps:
                lines.append(f"completed: {'; '.join(tasks.completed_steps)}")
            if tasks.next_steps:
                lines.append(f"next: {'; '.join(tasks.next_steps)}")
        lines.append(f"messages in history: {len(self.history)}")
        return lines

    # -- One model turn -------------------------------------------------------

    def run_turn(self, prompt: str, auto: bool = False) -> TurnOutcome:
        """Send one prompt to the model. Never raises; errors end the turn."""
        if not auto:
            self._log("log_user_prompt", prompt)
            self.history.append(ConversationMessage("user", prompt))
            if self.tasks.is_multi_step_task(prompt):
                self.tasks.start_task(prompt)
                if self.verbose:
                    fmt.task_started(prompt)

        try:
            model = self.registry.get_model_from_string(self.model, self.credentials)
        except ProviderError as e:
            return self._turn_error(e, "model selection", auto=False)

        try:
            return self._model_turn(model, prompt, auto)
        except AgentError as e:
            return self._turn_error(e, "text generation", auto)
        except Exception as e:
            return self._turn_error(
                AgentError(f"Unexpected error: {e}"), "text generation", auto
            )

    def _model_turn(self, model, prompt: str, auto: bool) -> TurnOutcome:
        tools = self.tools.list_tools() if self.tools is not None else []
        messages = self._messages(prompt)
        msg, _ = self._complete(
            model, messages, tools, label="Continuing" if auto else "Turn"
        )

        tool_calls = getattr(msg, "tool_calls", None)
        if tool_calls:
            if msg.content:
                if self.verbose:
                    fmt.assistant_text(msg.content)
                self._log("log_agent_response", msg.content)
                self.history.append(ConversationMessage("assistant", msg.content))
            return self._tool_turn(model, tool_calls)
        return self._finish_turn(msg.content or "", None)

    def _tool_turn(self, model, tool_calls) -> TurnOutcome:
        results = []
        for tc in tool_calls:
            result = self._execute_tool(tc)
            results.append(result)
            self.tasks.record_tool_use(result["toolName"], result)
            self._log("log_tool_used", result["toolName"], result["result"])

        tool_used = results[0]["toolName"]
        msg, _ = self._complete(
            model, self._messages(build_summary_prompt(results)), None, label="Summary"
        )
        summary = msg.content or ""
        if not summary.strip():
            summary = "\n\n".join(r["result"] for r in results)
        return self._finish_turn(summary, tool_used)

    def _execute_tool(self, tc) -> dict:
        name = tc.function.name
        raw_args = tc.function.arguments or "{}"
        try:
            args = json.loads(raw_args)
        except (json.JSONDecodeError, TypeError) as e:
            text = f"error: invalid JSON in tool arguments: {e}"
            if self.verbose:
                fmt.tool_error(name, text)
            return tool_result(name, raw_args, text, True)

        if self.verbose:
            fmt.tool_call(name, json.dumps(args, indent=2))
        if self.tools is None:
            text, is_error = f"error: no tools available to run {name}", True
        else:
            t0 = time.monotonic()
            spinner = fmt.tool_spinner(name) if self.verbose else nullcontext()
            try:
                with spinner:
                    text, is_error = self.tools.call_tool(name, args)
            except Exception as e:
                text, is_error = f"error: {e}", True
            if self.verbose:
                if is_error:
                    fmt.tool_error(name, text)
                else:
                    fmt.tool_result(name, time.monotonic() - t0, text[:MAX_PREVIEW])
        return tool_result(name, args, text, is_error)

    def _finish_turn(self, text: str, tool_used: str | None) -> TurnOutcome:
        fmt.agent_response(self.agent_name, text)
        self._log("log_agent_response", text)
        self.history.append(ConversationMessage("assistant", text, tool_used=tool_used))

        self.tasks.process_response(text, tool_used)
        if self.tasks.get_completion_status().is_complete:
            self._announce_completion()
            return TurnOutcome(text, tool_used, completed=True)

        cont = self.tasks.should_continue_automatically(text, tool_used)
        return TurnOutcome(text, tool_used, should_continue=cont)

    # -- Helpers --------------------------------------------------------------

    def _messages(self, prompt: str) -> list[dict]:
        context = build_conversation_context(
            self.history, self.tasks.get_task_context(), window=self.context_messages
        )
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt + context},
        ]

    def _complete(self, model, messages: list[dict], tools, label: str):
        if self.verbose:
            fmt.turn_header(label, estimate_tokens(messages, tools))
        t0 = time.monotonic()
        spinner = fmt.llm_spinner() if self.verbose else nullcontext()
        with spinner:
            msg, finish_reason = model.complete(
                messages,
                tools=tools or None,
                tool_choice=self.tool_choice,
                temperature=self.temperature,
                timeout=self.request_timeout,
            )
        if self.verbose:
            fmt.llm_timing(time.monotonic() - t0, finish_reason)
        return msg, finish_reason

    def _announce_completion(self) -> None:
        status = self.tasks.get_completion_status()
        fmt.task_complete(status.reason, status.step_count)
        self.tasks.reset_task()

    def _turn_error(self, err: AgentError, context: str, auto: bool) -> TurnOutcome:
        message = str(err)
        fmt.error(message, context)
        self._log("log_agent_error", f"{context}: {message}")
        if auto:
            self.tasks.fail_task(message)
        return TurnOutcome(None, error=message)

    def _log(self, method: str, *args) -> None:
        if self.log is not None:
            getattr(self.log, method)(*args)
