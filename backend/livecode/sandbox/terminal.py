import re


ANSI_ESCAPE_REGEX = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
ANSI_ESCAPE_REGEX_COMPREHENSIVE = re.compile(
    r"\x1b\[[0-9;]*[mGKHfABCDsuJ]"
    r"|\x1b\[[\?]?[0-9;]*[hlc]"
    r"|\x1b\[[0-9;]*[~]"
    r"|\x1b\].*?\x07"
    r"|\x1b\[.*?[\x40-\x7E]"
)

ERROR_LINE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^error:",
        r"^npm err!",
        r"^fatal:",
        r"^exception",
        r"^traceback",
        r"^uncaught",
        r"command failed",
        r"build failed",
    )
]

# Terminal annotations written next to raw process output
PROMPT_COLOR = "\x1b[36m"
ERROR_COLOR = "\x1b[31m"
SUCCESS_COLOR = "\x1b[1;32m"
RESET = "\x1b[0m"


def strip_ansi_codes(text: str, comprehensive: bool = True) -> str:
    if not text:
        return text
    regex = ANSI_ESCAPE_REGEX_COMPREHENSIVE if comprehensive else ANSI_ESCAPE_REGEX
    return regex.sub("", text)


def contains_ansi_codes(text: str) -> bool:
    return bool(ANSI_ESCAPE_REGEX_COMPREHENSIVE.search(text or ""))


def clean_terminal_output(text: str) -> str:
    """Strip ANSI codes, normalise line endings and trim blank edges."""
    if not text:
        return text
    cleaned = strip_ansi_codes(text)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "")
    cleaned = re.sub(r"^\s*\n+", "", cleaned)
    cleaned = re.sub(r"\n+\s*$", "", cleaned)
    return cleaned


def parse_terminal_lines(output: str) -> list[str]:
    cleaned = clean_terminal_output(output)
    return [line for line in (cleaned or "").split("\n") if line.strip()]


def extract_error_messages(output: str) -> list[str]:
    """Lines that look like tool errors ("npm ERR!", "Traceback", ...)."""
    return [
        line
        for line in parse_terminal_lines(output)
        if any(p.search(line.strip()) for p in ERROR_LINE_PATTERNS)
    ]


def format_prompt(command: str) -> str:
    return f"{PROMPT_COLOR}$ {command}{RESET}\r\n"


def format_error(message: str) -> str:
    return f"{ERROR_COLOR}Error: {message}{RESET}\r\n"


def format_success(message: str) -> str:
    return f"{SUCCESS_COLOR}{message}{RESET}\r\n"
