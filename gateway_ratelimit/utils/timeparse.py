"""
Duration parsing helpers.

Durations on Gateway API resources use the Go duration grammar: an optional
sign followed by one or more decimal numbers, each with an optional fraction
and a unit suffix, e.g. "300ms", "1.5h" or "2h45m".
"""
import re

NANOSECOND = 1
MICROSECOND = 1000 * NANOSECOND
MILLISECOND = 1000 * MICROSECOND
SECOND = 1000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

_MAX_DURATION_NS = 2 ** 63 - 1

_UNITS = {
    "ns": NANOSECOND,
    "us": MICROSECOND,
    "µs": MICROSECOND,  # U+00B5 micro sign
    "μs": MICROSECOND,  # U+03BC greek mu
    "ms": MILLISECOND,
    "s": SECOND,
    "m": MINUTE,
    "h": HOUR,
}

# "ms" has to be tried before "m" and "s"
_COMPONENT_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?(ns|us|µs|μs|ms|s|m|h)")


def parse_duration_ns(time_str: str) -> int:
    """
    Parse a Go-style duration string into integer nanoseconds.

    Fractional parts below one nanosecond are truncated, as Go does.

    Args:
        time_str: Duration such as "1h30m", "1.1ms" or "-1s"

    Returns:
        Signed duration in nanoseconds

    Raises:
        ValueError: If the string is not a valid duration
    """
    if not isinstance(time_str, str) or not time_str:
        raise ValueError(f"invalid duration {time_str!r}")

    remaining = time_str
    sign = 1
    if remaining[0] in "+-":
        sign = -1 if remaining[0] == "-" else 1
        remaining = remaining[1:]

    if remaining == "0":
        return 0
    if not remaining:
        raise ValueError(f"invalid duration {time_str!r}")

    total = 0
    pos = 0
    while pos < len(remaining):
        match = _COMPONENT_RE.match(remaining, pos)
        if not match:
            raise ValueError(f"invalid duration {time_str!r}")

        whole, fraction, unit = match.groups()
        if not whole and not fraction:
            raise ValueError(f"invalid duration {time_str!r}")

        scale = _UNITS[unit]
        total += int(whole or "0") * scale
        if fraction:
            total += int(fraction) * scale // (10 ** len(fraction))

        if total > _MAX_DURATION_NS:
            raise ValueError(f"invalid duration {time_str!r}")
        pos = match.end()

    return sign * total

