"""Duration parsing for check frequencies and timeouts."""

import re

from .errors import ValidationError

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


def parse_duration(value) -> float:
    """
    Parse a duration into seconds.

    Accepts "30s", "5m", "1h", "250ms" or a bare number of seconds.

    Raises:
        ValidationError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ValidationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValidationError(f"invalid duration {value!r}")
        return float(value)

    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValidationError(f"invalid duration {value!r}")
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


def parse_duration_ms(value) -> int:
    """Parse a duration into whole milliseconds; bare numbers are milliseconds."""
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise ValidationError(f"invalid duration {value!r}")
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return int(round(parse_duration(value) * 1000))
