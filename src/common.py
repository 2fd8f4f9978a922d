"""Common utilities shared by the gateway and the credential tooling."""

import logging
import re
import subprocess
from datetime import timedelta
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r'^(\d+)([smhdw])$')
_DURATION_UNITS = {
    's': 'seconds',
    'm': 'minutes',
    'h': 'hours',
    'd': 'days',
    'w': 'weeks',
}


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 60,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def parse_duration(value: str) -> timedelta:
    """Parse a short duration string such as 1h, 24h, 7d.

    Supported units: s, m, h, d, w. The amount must be a positive integer.

    Raises:
        ValueError: If the string is not a recognised duration
    """
    match = _DURATION_RE.match(value.strip().lower()) if value else None
    if not match:
        raise ValueError(f"Invalid duration '{value}' (examples: 30m, 1h, 24h, 7d)")
    amount = int(match.group(1))
    if amount == 0:
        raise ValueError(f"Duration must be positive: '{value}'")
    return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


def format_duration(delta: timedelta) -> str:
    """Format a timedelta as whole seconds ("3600s") for Go-style parsers."""
    return f"{int(delta.total_seconds())}s"
