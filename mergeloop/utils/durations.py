"""Duration parsing and formatting for workflow timeouts.

Timeouts in the workflow configuration may be written either as a number of
seconds or as a compact duration string (``"2h"``, ``"30m"``, ``"1h30m"``,
``"45s"``). Diagrams render them back in the same compact form.

Example:
    >>> parse_duration("1h30m")
    5400.0
    >>> format_duration(5400)
    '1h30m'
"""

import re

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0}


def parse_duration(value: str | int | float) -> float:
    """Convert a duration value to seconds.

    Args:
        value: Seconds as a number, or a string such as ``"2h"``, ``"90s"``,
            ``"1h30m"``. A bare numeric string is read as seconds.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the value is negative or not a recognised duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if not text:
            raise ValueError("Invalid duration: empty string")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"Invalid duration: {value!r}") from None
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}") from None

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds as a compact duration string (``2h``, ``1m30s``)."""
    if seconds != int(seconds):
        return f"{seconds:g}s"

    remaining = int(seconds)
    if remaining == 0:
        return "0s"

    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return "".join(parts)
