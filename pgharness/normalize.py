"""
Output normalization for regression comparison.

Only client noise is removed: line endings, the psql banner, prompts,
connection notices, ``psql:<file>:<line>:`` prefixes, timing lines and
whitespace at line ends or between blocks. Anything that could carry
query results is left alone.
"""

import re
from typing import List, Optional


_BANNER = re.compile(r"^psql \(\d+(\.\d+)*")
_CONNECTION_NOTICES = re.compile(r"^(You are now connected to|SSL connection \()")
_PROMPT = re.compile(r"^\w+[=\-(][#>] ")
_TIMING = re.compile(r"^Time: \d+(\.\d+)? ms")
_LOCATION_PREFIX = re.compile(
    r"^psql:[^:\n]*:\d+: (?=(ERROR|FATAL|WARNING|NOTICE|INFO|DETAIL|HINT|CONTEXT|LINE \d+):)"
)
_ERROR_LINE = re.compile(r"^(?:psql:[^:\n]*:\d+: )?(ERROR|FATAL):\s+(.*)$", re.MULTILINE)


def normalize_output(text: str) -> str:
    """Normalized form of psql output, without a trailing newline."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    lines: List[str] = []
    for line in text.split("\n"):
        if _BANNER.match(line) or _CONNECTION_NOTICES.match(line) or _TIMING.match(line):
            continue
        line = _PROMPT.sub("", line)
        line = _LOCATION_PREFIX.sub("", line)
        lines.append(line.rstrip())

    # At most one blank line in a row
    collapsed: List[str] = []
    for line in lines:
        if line == "" and collapsed and collapsed[-1] == "":
            continue
        collapsed.append(line)

    while collapsed and collapsed[-1] == "":
        collapsed.pop()
    return "\n".join(collapsed)


def extract_error_message(output: str) -> Optional[str]:
    """First ERROR/FATAL message in psql output, or None."""
    match = _ERROR_LINE.search(output.replace("\r\n", "\n"))
    if not match:
        return None
    return f"{match.group(1)}: {match.group(2).strip()}"
