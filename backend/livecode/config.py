import os
import logging

from dotenv import load_dotenv
from pydantic import BaseModel, Field

current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Load env from backend/.env first, then fallback to livecode/.env without overriding
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


logger = logging.getLogger("livecode.config")


DEFAULT_ALLOWED_TOOLS: list[str] = [
    # package managers / runtimes
    "npm", "npx", "yarn", "pnpm", "bun", "node", "deno", "tsc", "vite",
    "python", "python3", "pip", "pip3", "uvicorn",
    # filesystem navigation
    "ls", "cd", "pwd", "cat", "mkdir", "touch", "cp", "mv", "rm", "echo",
    "head", "tail", "grep", "find", "which", "wc", "sort", "chmod",
    # vcs / archives / network fetch
    "git", "tar", "zip", "unzip", "gzip", "curl", "wget",
]

DEFAULT_DENIED_PATTERNS: list[str] = [
    r"\brm\s+(-[a-zA-Z]*r[a-zA-Z]*f|-[a-zA-Z]*f[a-zA-Z]*r|-r\s+-f|-f\s+-r)",
    r"\bsudo\s+rm\b",
    r"\bdd\s+if=",
    r"\bdel\s+/f\b",
    r"\bmkfs(\.\w+)?\b",
    r">\s*/dev/(sd|hd|nvme|disk)",
    r"^\s*format\b",
]

# Models a session may be created with; /api/models narrows this to what the gateway serves
ALLOWED_MODELS: list[str] = [
    "openai/gpt-4.1",
    "openai/gpt-4.1-mini",
    "openai/gpt-5",
    "openai/gpt-5-mini",
]

DEFAULT_LONG_RUNNING: list[str] = [
    "npm start",
    "npm run dev",
    "npm run start",
    "yarn dev",
    "yarn start",
    "pnpm dev",
    "pnpm start",
    "serve",
    "python -m http.server",
    "vite",
]

DEFAULT_ENTRY_FILES: list[str] = [
    "src/App.tsx",
    "src/App.js",
    "App.tsx",
    "App.js",
    "src/index.tsx",
    "src/index.js",
]


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring invalid %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring invalid %s=%r", name, raw)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration for a live coding session.

    Attributes:
        project_dir: Directory (relative to the sandbox cwd) holding the generated app.
        allowed_tools: First tokens accepted as real shell commands.
        denied_patterns: Regexes that make a command invalid regardless of the allow-list.
        long_running: Substrings flagged as server-start commands (valid, with a warning).
        entry_files: Canonical application entry files that update the editor state.
    """

    project_dir: str = "my-app"

    allowed_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    denied_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_DENIED_PATTERNS))
    long_running: list[str] = Field(default_factory=lambda: list(DEFAULT_LONG_RUNNING))
    entry_files: list[str] = Field(default_factory=lambda: list(DEFAULT_ENTRY_FILES))

    # Timeouts in seconds per command class
    default_timeout: float = 15.0
    build_timeout: float = 45.0
    install_timeout: float = 60.0
    kill_on_timeout: bool = True
    output_drain_timeout: float = 2.0
    # Server-start commands return after this long and keep running
    detach_after: float = 5.0

    # Read-only command cache
    cache_ttl: float = 15.0
    cache_max_entries: int = 20

    # Parser
    parse_cache_size: int = 50
    parse_interval: float = 0.1
    parse_min_chars: int = 256
    partial_preview_min_chars: int = 40
    materialize_while_streaming: bool = True

    # Feedback loop
    feedback_enabled: bool = True
    feedback_debounce: float = 1.0
    feedback_max_attempts: int = 3

    # Session
    event_log_size: int = 500
    bootstrap_project: bool = True
    project_template: str = "react-ts"

    # Model
    model: str = "openai/gpt-4.1"
    api_key: str | None = None
    base_url: str = "https://ai-gateway.vercel.sh/v1"
    model_stream_url: str | None = None

    # Sandbox
    sandbox_runtime: str = "node22"
    sandbox_ports: list[int] = Field(default_factory=lambda: [5173])
    sandbox_timeout_ms: int = 600_000


def load_settings() -> Settings:
    """Build settings from the process environment (after .env loading)."""
    settings = Settings(
        project_dir=os.getenv("LIVECODE_PROJECT_DIR", "my-app"),
        default_timeout=_env_float("LIVECODE_DEFAULT_TIMEOUT", 15.0),
        build_timeout=_env_float("LIVECODE_BUILD_TIMEOUT", 45.0),
        install_timeout=_env_float("LIVECODE_INSTALL_TIMEOUT", 60.0),
        kill_on_timeout=_env_bool("LIVECODE_KILL_ON_TIMEOUT", True),
        detach_after=_env_float("LIVECODE_DETACH_AFTER", 5.0),
        cache_ttl=_env_float("LIVECODE_CACHE_TTL", 15.0),
        cache_max_entries=_env_int("LIVECODE_CACHE_MAX_ENTRIES", 20),
        parse_interval=_env_float("LIVECODE_PARSE_INTERVAL", 0.1),
        parse_min_chars=_env_int("LIVECODE_PARSE_MIN_CHARS", 256),
        materialize_while_streaming=_env_bool("LIVECODE_MATERIALIZE_WHILE_STREAMING", True),
        feedback_enabled=_env_bool("LIVECODE_FEEDBACK_ENABLED", True),
        feedback_debounce=_env_float("LIVECODE_FEEDBACK_DEBOUNCE", 1.0),
        feedback_max_attempts=_env_int("LIVECODE_FEEDBACK_MAX_ATTEMPTS", 3),
        event_log_size=_env_int("LIVECODE_EVENT_LOG_SIZE", 500),
        bootstrap_project=_env_bool("LIVECODE_BOOTSTRAP_PROJECT", True),
        project_template=os.getenv("LIVECODE_PROJECT_TEMPLATE", "react-ts"),
        model=os.getenv("DEFAULT_MODEL") or "openai/gpt-4.1",
        api_key=(
            os.getenv("AI_GATEWAY_API_KEY")
            or os.getenv("VERCEL_OIDC_TOKEN")
            or os.getenv("OPENAI_API_KEY")
        ),
        base_url=(
            os.getenv("AI_GATEWAY_BASE_URL")
            or os.getenv("OPENAI_BASE_URL")
            or "https://ai-gateway.vercel.sh/v1"
        ),
        model_stream_url=os.getenv("MODEL_STREAM_URL") or None,
        sandbox_runtime=os.getenv("SANDBOX_RUNTIME", "node22"),
        sandbox_ports=[_env_int("SANDBOX_APP_PORT", 5173)],
    )
    # Env lists extend the defaults rather than replacing them
    settings.allowed_tools.extend(_env_list("LIVECODE_ALLOWED_TOOLS"))
    settings.denied_patterns.extend(_env_list("LIVECODE_DENIED_PATTERNS"))
    settings.long_running.extend(_env_list("LIVECODE_LONG_RUNNING"))
    settings.entry_files.extend(_env_list("LIVECODE_ENTRY_FILES"))
    return settings
