"""
External process invocation.

All docker / psql calls go through run_command with an argument vector.
Nothing here ever builds a shell string, and nothing here raises: a
missing binary or an expired timeout comes back as a CommandResult with
a non-zero exit code.
"""

import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from .log_helper import getLogger


log = getLogger("process")

# Exit codes used when the process could not produce its own
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124
EXIT_OS_ERROR = 126


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""
    argv: Tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


# run_command's signature; tests substitute a scripted fake
CommandRunner = Callable[..., CommandResult]


def _to_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def run_command(
    argv: Sequence[str],
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
    merge_stderr: bool = False,
) -> CommandResult:
    """
    Run *argv* and capture its output.

    Args:
        argv: Program and arguments, never interpolated through a shell
        input_text: Written to the process stdin when given
        timeout: Seconds before the process is killed
        merge_stderr: Interleave stderr into stdout (psql regression output)
    """
    args = tuple(str(a) for a in argv)
    log.debug("exec: %s", " ".join(args))
    try:
        completed = subprocess.run(
            list(args),
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        return CommandResult(args, "", f"command not found: {args[0]}", EXIT_NOT_FOUND)
    except subprocess.TimeoutExpired as e:
        return CommandResult(
            args,
            _to_text(e.stdout),
            _to_text(e.stderr) + f"\ntimed out after {timeout}s",
            EXIT_TIMEOUT,
        )
    except OSError as e:
        return CommandResult(args, "", f"{args[0]}: {e}", EXIT_OS_ERROR)

    return CommandResult(
        args,
        completed.stdout or "",
        completed.stderr or "",
        completed.returncode,
    )


def check_command(name: str) -> bool:
    """True if *name* is an executable on PATH."""
    return shutil.which(name) is not None
