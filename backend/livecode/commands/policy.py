import logging
import re

from livecode.config import Settings
from livecode.types import CommandClass, CommandValidation


logger = logging.getLogger("livecode.commands.policy")


# Lines that leak into ```bash blocks when the model confuses code and shell
NON_SHELL_PATTERNS = [
    re.compile(p)
    for p in (
        r"^(import|export|const|let|var|function|class|return|interface|type|async|await)\b",
        r"^</?[A-Za-z!][^>]*>?",  # JSX / HTML tags
        r"^[{}\[\]()]",
        r"^[\"']?[A-Za-z_$][\w$-]*[\"']?\s*:\s",  # object literal entries
        r"=>",
        r"\);\s*$",
    )
]

ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=\S*$")

INSTALL_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bnpm\s+(install|i|ci|add)\b",
        r"\byarn\s+(install|add)\b",
        r"^yarn\s*$",
        r"\bpnpm\s+(install|i|add)\b",
        r"\bbun\s+(install|add)\b",
        r"\bpip3?\s+install\b",
        r"-m\s+pip\s+install\b",
    )
]

BUILD_PATTERNS = [
    re.compile(p)
    for p in (
        r"\b(npm|pnpm|yarn)\s+(run\s+)?(build|dev)\b",
        r"\bgit\s+clone\b",
        r"\bvite\s+build\b",
        r"\btsc\b",
        r"\bnpm\s+create\b",
    )
]

# Subcommands that make a server binary (``vite build``) run once and exit
ONE_SHOT_SUBCOMMANDS = {"build", "optimize", "--version", "-v", "--help", "-h"}

CACHEABLE_PATTERNS = [
    re.compile(p)
    for p in (
        r"^ls(\s+-[a-zA-Z]+)*(\s+[\w./-]+)?$",
        r"^pwd$",
        r"^cat\s+[\w./-]+$",
        r"^(node|npm|npx|yarn|pnpm|python3?|pip3?|git|bun|deno)\s+(--version|-v|-V|version)$",
    )
]


class CommandPolicy:
    """Decide which lines of a command block are real, safe shell commands.

    The allow/deny/long-running lists come from ``Settings`` so operators can
    widen or tighten them without code changes.
    """

    def __init__(
        self,
        allowed_tools: list[str],
        denied_patterns: list[str],
        long_running: list[str],
    ) -> None:
        self.allowed_tools = set(allowed_tools)
        self.denied_patterns = [(p, re.compile(p, re.IGNORECASE)) for p in denied_patterns]
        self.long_running = list(long_running)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommandPolicy":
        return cls(
            allowed_tools=settings.allowed_tools,
            denied_patterns=settings.denied_patterns,
            long_running=settings.long_running,
        )

    def first_tool(self, line: str) -> str | None:
        """First whitespace token after any leading ``VAR=value`` assignments."""
        for token in line.split():
            if ENV_ASSIGNMENT.match(token):
                continue
            return token
        return None

    def is_executable(self, line: str) -> bool:
        stripped = (line or "").strip()
        if not stripped:
            return False
        if stripped.startswith("#") or stripped.startswith("//"):
            return False
        if any(p.search(stripped) for p in NON_SHELL_PATTERNS):
            return False
        tool = self.first_tool(stripped)
        return tool is not None and tool in self.allowed_tools

    def validate(self, command: str) -> CommandValidation:
        for source, pattern in self.denied_patterns:
            m = pattern.search(command)
            if m:
                return CommandValidation(
                    valid=False,
                    warning=f"Dangerous command detected: {m.group(0).strip() or source}",
                )
        long_running = self.long_running_match(command)
        if long_running:
            return CommandValidation(valid=True, warning=f"Long-running command: {long_running}")
        return CommandValidation(valid=True)

    def long_running_match(self, command: str) -> str | None:
        lowered = command.lower()
        for long_running in self.long_running:
            m = re.search(
                rf"(?:^|[\s;&|(]){re.escape(long_running.lower())}(?:\s+(\S+)|\s*$)", lowered
            )
            if m is None:
                continue
            if m.group(1) in ONE_SHOT_SUBCOMMANDS:
                continue
            return long_running
        return None

    def classify(self, command: str) -> CommandClass:
        if any(p.search(command) for p in INSTALL_PATTERNS):
            return CommandClass.INSTALL
        if any(p.search(command) for p in BUILD_PATTERNS):
            return CommandClass.BUILD
        return CommandClass.DEFAULT

    def is_cacheable(self, command: str) -> bool:
        stripped = command.strip()
        return any(p.match(stripped) for p in CACHEABLE_PATTERNS)

    def extract_commands(self, block: str) -> list[str]:
        """Split a command block into executable lines.

        Backslash continuations are joined first; rejected lines are dropped
        and logged, never surfaced as errors.
        """
        commands: list[str] = []
        pending = ""
        for raw in (block or "").split("\n"):
            line = raw.rstrip()
            if line.endswith("\\"):
                pending += line[:-1].strip() + " "
                continue
            line = (pending + line.strip()).strip()
            pending = ""
            if not line:
                continue
            if line.startswith("$ "):
                line = line[2:].strip()
            if self.is_executable(line):
                commands.append(line)
            else:
                logger.debug("dropping non-command line from command block: %r", line)
        if pending.strip():
            line = pending.strip()
            if self.is_executable(line):
                commands.append(line)
            else:
                logger.debug("dropping non-command line from command block: %r", line)
        return commands
