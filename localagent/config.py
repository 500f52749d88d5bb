"""Project configuration loading for localagent.

A project directory holds four files plus a log directory:

    system.md          extra system prompt text
    local-agent.json   agent configuration (model, temperature, system, ...)
    mcp-tools.json     tool manifest: {"mcpServers": {name: {command, args}}}
    keys.json          provider name -> API key
    memory/            session transcripts

Precedence for settings: CLI flags > local-agent.json > defaults. For
credentials: keys.json > environment variables.
"""

import json
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .tasks import TaskLimits, TaskPatterns

REQUIRED_FILES = ("system.md", "local-agent.json", "mcp-tools.json", "keys.json")
MEMORY_DIR = "memory"

DEFAULT_REQUEST_TIMEOUT = 120
DEFAULT_CONTEXT_MESSAGES = 10


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "name": str,
    "model": str,
    "temperature": (int, float),
    "system": str,
    "tools": str,
    "toolChoice": str,
    "prompt": str,
    "context_messages": int,
    "max_task_steps": int,
    "max_responses_without_tools": int,
    "max_file_tool_calls": int,
    "request_timeout": (int, float),
    "task_patterns": dict,
}

_POSITIVE_INT_KEYS = {
    "context_messages",
    "max_task_steps",
    "max_responses_without_tools",
    "max_file_tool_calls",
}

PROVIDER_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

DEFAULT_CONFIG: dict[str, Any] = {
    "model": "openai/gpt-4o-mini",
    "tools": "mcpTools",
    "toolChoice": "auto",
    "temperature": 0,
    "system": "You are a helpful assistant. Be as concise as possible.",
}

DEFAULT_KEYS: dict[str, str] = {}


def default_tools(base_dir: Path) -> dict:
    return {
        "mcpServers": {
            "filesystem": {
                "command": "npx",
                "args": [
                    "-y",
                    "@modelcontextprotocol/server-filesystem",
                    str(Path(base_dir).resolve()),
                ],
            },
            "basic-memory": {
                "command": "uvx",
                "args": ["basic-memory", "mcp"],
            },
        }
    }


@dataclass
class ProjectConfig:
    """Everything loaded from a project directory."""

    base_dir: Path
    settings: dict
    system_prompt: str
    mcp_servers: dict[str, dict]
    credentials: dict[str, str]
    patterns: TaskPatterns = field(default_factory=TaskPatterns)
    limits: TaskLimits = field(default_factory=TaskLimits)

    @property
    def model(self) -> str:
        return self.settings["model"]

    @property
    def temperature(self) -> float | None:
        return self.settings.get("temperature")

    @property
    def tool_choice(self) -> str:
        return self.settings.get("toolChoice", "auto")

    @property
    def request_timeout(self) -> float:
        return self.settings.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)

    @property
    def context_messages(self) -> int:
        return self.settings.get("context_messages", DEFAULT_CONTEXT_MESSAGES)

    @property
    def memory_dir(self) -> Path:
        return self.base_dir / MEMORY_DIR

    @property
    def agent_name(self) -> str:
        name = self.settings.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        return self.base_dir.resolve().name


# --- Project initialization ---


def missing_project_files(base_dir: Path) -> list[str]:
    """Required files and the memory directory that do not exist yet."""
    base = Path(base_dir)
    missing = [name for name in REQUIRED_FILES if not (base / name).exists()]
    if not (base / MEMORY_DIR).exists():
        missing.append(MEMORY_DIR + "/")
    return missing


def initialize_project_files(base_dir: Path) -> list[str]:
    """Create every missing file with default content. Returns what was created."""
    base = Path(base_dir)
    base.mkdir(parents=True, exist_ok=True)
    contents = {
        "system.md": "",
        "local-agent.json": json.dumps(DEFAULT_CONFIG, indent=2) + "\n",
        "mcp-tools.json": json.dumps(default_tools(base), indent=2) + "\n",
        "keys.json": json.dumps(DEFAULT_KEYS, indent=2) + "\n",
    }
    created = []
    for name in REQUIRED_FILES:
        path = base / name
        if not path.exists():
            path.write_text(contents[name], encoding="utf-8")
            created.append(name)
    memory = base / MEMORY_DIR
    if not memory.exists():
        memory.mkdir()
        created.append(MEMORY_DIR + "/")
    return created


# --- Internal helpers ---


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _load_json(path: Path, what: str) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"{what} file not found: {path}")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}")


def _validate_config(config: dict, source: str) -> None:
    """Check value types. Unknown keys only warn."""
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        expected = CONFIG_KEYS[key]
        # bool is an int subclass; reject it for numeric fields.
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")

    if "model" not in config:
        raise ConfigError(f"{source}: missing required key 'model'")
    if not config["model"].strip():
        raise ConfigError(f"{source}: 'model' must not be empty")

    patterns = config.get("task_patterns", {})
    known = {f.name for f in fields(TaskPatterns)}
    for key, values in patterns.items():
        if key not in known:
            raise ConfigError(f"{source}: task_patterns.{key}: unknown pattern list")
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigError(f"{source}: task_patterns.{key}: expected list of strings")


def _validate_mcp_server_configs(servers: dict, source: str) -> None:
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        prefix = f"{source}: mcpServers.{name}"
        if not isinstance(cfg, dict):
            raise ConfigError(f"{prefix} must be an object")
        has_command = "command" in cfg
        has_url = "url" in cfg
        if has_command == has_url:
            raise ConfigError(f"{prefix} must have exactly one of 'command' or 'url'")
        for key, expected in (("command", str), ("url", str), ("args", list),
                              ("env", dict), ("headers", dict)):
            if key in cfg and not isinstance(cfg[key], expected):
                raise ConfigError(
                    f"{prefix}.{key}: expected {expected.__name__}, got {type(cfg[key]).__name__}"
                )
        for i, elem in enumerate(cfg.get("args", [])):
            if not isinstance(elem, str):
                raise ConfigError(f"{prefix}.args[{i}]: expected string")
        for dict_key in ("env", "headers"):
            for k, v in cfg.get(dict_key, {}).items():
                if not isinstance(v, str):
                    raise ConfigError(f"{prefix}.{dict_key}.{k}: expected string")


# --- Public API ---


def load_agent_config(path: Path) -> dict:
    data = _load_json(path, "Configuration")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")
    _validate_config(data, str(path))
    return {k: v for k, v in data.items() if k in CONFIG_KEYS}


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Read the tool manifest and return server_name -> server config."""
    data = _load_json(path, "Tools configuration")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError(f"{path}: 'mcpServers' must be a JSON object")
    _validate_mcp_server_configs(servers, str(path))
    return servers


def load_keys(path: Path) -> dict[str, str]:
    data = _load_json(path, "Keys configuration")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")
    for name, value in data.items():
        if not isinstance(value, str):
            raise ConfigError(f"{path}: {name!r} expected string, got {type(value).__name__}")
    return {name.lower(): value for name, value in data.items() if value}


def resolve_credentials(
    keys: dict[str, str], environ: dict[str, str] | None = None
) -> dict[str, str]:
    """keys.json entries, with provider environment variables filling the gaps."""
    environ = os.environ if environ is None else environ
    credentials = dict(keys)
    for provider, var in PROVIDER_ENV_VARS.items():
        if provider not in credentials and environ.get(var):
            credentials[provider] = environ[var]
    return credentials


def export_credentials(credentials: dict[str, str]) -> None:
    """Put keys where LiteLLM looks for them. keys.json wins over the environment."""
    for provider, var in PROVIDER_ENV_VARS.items():
        key = credentials.get(provider)
        if key:
            os.environ[var] = key


def load_project(base_dir: Path) -> ProjectConfig:
    """Load and validate every project file. Raises ConfigError on any problem."""
    base = Path(base_dir)
    settings = load_agent_config(base / "local-agent.json")
    mcp_servers = load_mcp_json(base / "mcp-tools.json")
    credentials = resolve_credentials(load_keys(base / "keys.json"))

    try:
        extra_prompt = (base / "system.md").read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(f"{base / 'system.md'}: cannot read file: {e}")
    system_prompt = settings.get("system", "")
    if extra_prompt:
        system_prompt = f"{system_prompt}\n\n{extra_prompt}" if system_prompt else extra_prompt

    patterns = TaskPatterns()
    patterns.extend(settings.get("task_patterns", {}))
    limits = TaskLimits(
        max_steps=settings.get("max_task_steps", TaskLimits.max_steps),
        max_responses_without_tools=settings.get(
            "max_responses_without_tools", TaskLimits.max_responses_without_tools
        ),
        max_file_tool_calls=settings.get(
            "max_file_tool_calls", TaskLimits.max_file_tool_calls
        ),
    )

    return ProjectConfig(
        base_dir=base,
        settings=settings,
        system_prompt=system_prompt,
        mcp_servers=mcp_servers,
        credentials=credentials,
        patterns=patterns,
        limits=limits,
    )
