"""
Value validation for strings and durations embedded in proxy directives.

Every free-form value that flows from a policy into generated proxy
configuration passes through one of these functions first. A value that
could close its directive context (quotes, braces, semicolons), expand a
proxy variable, or hit a regex construct the proxy cannot run in linear
time is rejected with a ValueValidationError describing the problem.
"""
import re
from typing import List, Optional, Sequence, Tuple

from gateway_ratelimit.utils.timeparse import HOUR, MILLISECOND, MINUTE, SECOND, parse_duration_ns


class ValueValidationError(ValueError):
    """Raised when a value is not safe to embed in a proxy directive."""


def regex_error(msg: str, fmt: str, examples: Sequence[str] = ()) -> str:
    """Build a regex validation message listing example valid values."""
    if not examples:
        return f"{msg} (regex used for validation is '{fmt}')"
    listed = " or ".join(f"'{example}'," for example in examples)
    return f"{msg} (e.g. {listed} regex used for validation is '{fmt}')"


def max_len_error(length: int) -> str:
    return f"must be no more than {length} characters"


# ===== Paths =====

PATH_FMT = r"/[^\s{};]*"
PATH_ERR_MSG = "must start with / and must not include any whitespace character, `{`, `}` or `;`"
PATH_EXAMPLES = ["/", "/path", "/path/subpath-123"]

_PATH_RE = re.compile(PATH_FMT)


def validate_path(path: str) -> None:
    """Validate a path where an empty value means "unset"."""
    if path == "":
        return

    if not _PATH_RE.fullmatch(path):
        raise ValueValidationError(regex_error(PATH_ERR_MSG, PATH_FMT, PATH_EXAMPLES))

    if "$" in path:
        raise ValueValidationError("cannot contain $")


def validate_path_in_match(path: str) -> None:
    """
    Validate a path used in a prefix or exact location match.

    Prefix and exact locations compare the path literally, so $ is allowed here.
    """
    if path == "":
        raise ValueValidationError("cannot be empty")

    if not _PATH_RE.fullmatch(path):
        raise ValueValidationError(regex_error(PATH_ERR_MSG, PATH_FMT, PATH_EXAMPLES))


_LOOKAROUNDS = ("(?=", "(?!", "(?<=", "(?<!")
_BACKREF_RE = re.compile(r"\\[0-9]+")


def _check_linear_time_regex(pattern: str) -> None:
    """
    Reject regex constructs that need a backtracking engine.

    The proxy evaluates location and map regexes with a linear-time engine,
    so lookarounds, backreferences, atomic, conditional and comment groups,
    possessive quantifiers and the \\Z anchor would fail there even though
    they compile here.
    """
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueValidationError(f"invalid regex '{pattern}': {e}") from e

    for lookaround in _LOOKAROUNDS:
        if lookaround in pattern:
            raise ValueValidationError(
                f"lookahead/lookbehind '{lookaround}' found in '{pattern}' which is not supported "
                "by a linear-time regex engine"
            )

    positions = [f"[{m.start()}-{m.end()}]" for m in _BACKREF_RE.finditer(pattern)]
    if positions or "(?P=" in pattern:
        raise ValueValidationError(
            f"backreference(s) {positions or ['(?P=']} found in '{pattern}' which are not supported "
            "by a linear-time regex engine"
        )

    for construct, label in (("(?>", "atomic group"), ("(?(", "conditional group"), ("(?#", "comment group")):
        if construct in pattern:
            raise ValueValidationError(f"{label} '{construct}' found in '{pattern}' is not supported")

    for position, escape in _escapes_outside_class(pattern):
        if escape in _UNSUPPORTED_ESCAPES:
            raise ValueValidationError(
                f"escape '\\{escape}' at position {position} in '{pattern}' is not supported "
                "by a linear-time regex engine"
            )

    position = _find_possessive_quantifier(pattern)
    if position is not None:
        raise ValueValidationError(
            f"possessive quantifier at position {position} in '{pattern}' is not supported"
        )


# \Z means "end of text" here but is not an escape the proxy's engine knows
_UNSUPPORTED_ESCAPES = frozenset("Z")


def _escapes_outside_class(pattern: str) -> List[Tuple[int, str]]:
    """Return (position, escaped char) for each escape outside a character class."""
    escapes = []
    escaped = False
    in_class = False
    for i, char in enumerate(pattern):
        if escaped:
            escaped = False
            if not in_class:
                escapes.append((i - 1, char))
            continue
        if char == "\\":
            escaped = True
        elif in_class:
            if char == "]":
                in_class = False
        elif char == "[":
            in_class = True
    return escapes


def _find_possessive_quantifier(pattern: str) -> Optional[int]:
    escaped = False
    in_class = False
    previous = ""
    for i, char in enumerate(pattern):
        if escaped:
            escaped = False
            previous = ""
            continue
        if char == "\\":
            escaped = True
            continue
        if in_class:
            if char == "]":
                in_class = False
                previous = char
            continue
        if char == "[":
            in_class = True
            continue
        if char == "+" and previous in ("*", "+", "?", "}"):
            return i
        previous = char
    return None


def validate_path_in_regex_match(path: str) -> None:
    """
    Validate a path used in a regex location match.

    1. Must be non-empty and start with '/'
    2. Must not contain whitespace, '{', '}' or ';'
    3. Must compile as a regex
    4. Must not contain an unescaped '$' (proxy variable expansion)
    5. Must not use lookarounds, backreferences or other backtracking-only constructs
    """
    if path == "":
        raise ValueValidationError("cannot be empty")

    if not _PATH_RE.fullmatch(path):
        raise ValueValidationError(regex_error(PATH_ERR_MSG, PATH_FMT, PATH_EXAMPLES))

    try:
        re.compile(path)
    except re.error as e:
        raise ValueValidationError(f"invalid regex for path '{path}': {e}") from e

    for i, char in enumerate(path):
        if char == "$" and (i == 0 or path[i - 1] != "\\"):
            raise ValueValidationError(f"invalid unescaped `$` at position {i} in path '{path}'")

    _check_linear_time_regex(path)


# ===== Quoted strings =====

ESCAPED_STRINGS_FMT = r'([^"\\]|\\.)*'
ESCAPED_STRINGS_ERR_MSG = (
    "must have all '\"' (double quotes) escaped and must not end with an unescaped '\\' (backslash)"
)
ESCAPED_STRINGS_NO_VAR_EXPANSION_FMT = r'([^"$\\]|\\[^$])*'
ESCAPED_STRINGS_NO_VAR_EXPANSION_ERR_MSG = (
    "a valid value must have all '\"' escaped and must not contain any '$' or end with an "
    "unescaped '\\'"
)

_ESCAPED_STRINGS_RE = re.compile(ESCAPED_STRINGS_FMT)
_ESCAPED_STRINGS_NO_VAR_EXPANSION_RE = re.compile(ESCAPED_STRINGS_NO_VAR_EXPANSION_FMT)


def validate_escaped_string(value: str, examples: Sequence[str] = ()) -> None:
    """
    Validate a value placed between double quotes in a directive that may
    expand variables, e.g. a zone key "$binary_remote_addr".
    """
    if not _ESCAPED_STRINGS_RE.fullmatch(value):
        raise ValueValidationError(regex_error(ESCAPED_STRINGS_ERR_MSG, ESCAPED_STRINGS_FMT, examples))


def validate_escaped_string_no_var_expansion(value: str, examples: Sequence[str] = ()) -> None:
    """Same as validate_escaped_string, but '$' is not allowed at all."""
    if not _ESCAPED_STRINGS_NO_VAR_EXPANSION_RE.fullmatch(value):
        raise ValueValidationError(
            regex_error(
                ESCAPED_STRINGS_NO_VAR_EXPANSION_ERR_MSG,
                ESCAPED_STRINGS_NO_VAR_EXPANSION_FMT,
                examples,
            )
        )


# ===== Headers =====

MAX_HEADER_LENGTH = 256
HTTP_HEADER_NAME_FMT = r"[-A-Za-z0-9]+"
HTTP_HEADER_NAME_ERR_MSG = "a valid HTTP header must consist of alphanumeric characters or '-'"
INVALID_HEADERS_ERR_MSG = "unsupported header name configured, unsupported names are: "
INVALID_HEADERS = ("host", "connection", "upgrade")

_HTTP_HEADER_NAME_RE = re.compile(HTTP_HEADER_NAME_FMT)


def validate_header_name(name: str) -> None:
    if len(name) > MAX_HEADER_LENGTH:
        raise ValueValidationError(max_len_error(MAX_HEADER_LENGTH))

    if not _HTTP_HEADER_NAME_RE.fullmatch(name):
        raise ValueValidationError(
            regex_error(HTTP_HEADER_NAME_ERR_MSG, HTTP_HEADER_NAME_FMT, ["X-Header-Name"])
        )

    if name.lower() in INVALID_HEADERS:
        raise ValueValidationError(INVALID_HEADERS_ERR_MSG + ", ".join(INVALID_HEADERS))


# ===== Durations =====

DURATION_STRING_FMT = r"[0-9]{1,4}(ms|s|m|h)?"
MAX_DURATION_VALUE = 9999

_DURATION_STRING_RE = re.compile(DURATION_STRING_FMT)

_DURATION_UNITS = (
    ("ms", 1),
    ("s", SECOND // MILLISECOND),
    ("m", MINUTE // MILLISECOND),
    ("h", HOUR // MILLISECOND),
)


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


class DurationValidator:
    """Converts Gateway API durations into the proxy's single-unit duration format."""

    def validate_duration(self, duration: str) -> str:
        return convert_duration(duration)


def convert_duration(value: str) -> str:
    """
    Convert a duration into a proxy-friendly single-unit form.

    The result matches `^[0-9]{1,4}(ms|s|m|h)?$`. Conversion rules:
      - an input already in that form is returned unchanged
      - the duration must be > 0
      - it is rounded up to the next whole millisecond
      - the smallest unit (ms, s, m, h) whose rounded-up value fits in 1-4 digits wins

    Args:
        value: Duration such as "24h", "1.1ms" or "10000s"

    Returns:
        Normalized duration string, e.g. "2ms" or "167m"

    Raises:
        ValueValidationError: If the value is not a positive duration below 10000h
    """
    if _DURATION_STRING_RE.fullmatch(value):
        return value

    try:
        duration_ns = parse_duration_ns(value)
    except ValueError as e:
        raise ValueValidationError(f"invalid duration: {e}") from e

    if duration_ns <= 0:
        raise ValueValidationError("duration must be > 0")

    total_ms = _ceil_div(duration_ns, MILLISECOND)

    for suffix, step in _DURATION_UNITS:
        amount = _ceil_div(total_ms, step)
        if 1 <= amount <= MAX_DURATION_VALUE:
            return f"{amount}{suffix}"

    raise ValueValidationError(
        f"duration is too large for the proxy format (exceeds {MAX_DURATION_VALUE}h)"
    )


# ===== Rate limit fields =====

RATE_FMT = r"[1-9][0-9]*r/[sm]"
SIZE_FMT = r"[0-9]{1,4}[kKmMgG]?"
ZONE_NAME_FMT = r"[A-Za-z0-9_-]{1,63}"
CLAIM_PATH_FMT = r"[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*"
VARIABLE_NAME_FMT = r"\$[A-Za-z_][A-Za-z0-9_]*"

_RATE_RE = re.compile(RATE_FMT)
_SIZE_RE = re.compile(SIZE_FMT)
_ZONE_NAME_RE = re.compile(ZONE_NAME_FMT)
_CLAIM_PATH_RE = re.compile(CLAIM_PATH_FMT)
_VARIABLE_NAME_RE = re.compile(VARIABLE_NAME_FMT)
_VARIABLE_REFERENCE_RE = re.compile(r"(?<!\\)\$[A-Za-z_{]")

_SIZE_MULTIPLIERS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def validate_rate(rate: str) -> None:
    if not _RATE_RE.fullmatch(rate):
        raise ValueValidationError(regex_error("must be a request rate", RATE_FMT, ["10r/s", "300r/m"]))


def validate_size(size: str) -> None:
    if not _SIZE_RE.fullmatch(size):
        raise ValueValidationError(regex_error("must be a size", SIZE_FMT, ["1024", "8k", "10m"]))


def parse_size(size: str) -> int:
    """Parse a proxy size literal such as "8k" into bytes."""
    validate_size(size)
    suffix = size[-1].lower() if size[-1].isalpha() else ""
    digits = size[:-1] if suffix else size
    return int(digits) * _SIZE_MULTIPLIERS[suffix]


def validate_zone_name(name: str) -> None:
    if not _ZONE_NAME_RE.fullmatch(name):
        raise ValueValidationError(regex_error("must be a valid zone name", ZONE_NAME_FMT, ["zone_one"]))


def validate_key_expression(key: str) -> None:
    if key == "":
        raise ValueValidationError("cannot be empty")
    validate_escaped_string(key, ["$binary_remote_addr", "$http_x_api_key"])


def validate_claim_path(claim: str) -> None:
    if not _CLAIM_PATH_RE.fullmatch(claim):
        raise ValueValidationError(
            regex_error("must be a dotted claim path", CLAIM_PATH_FMT, ["sub", "user_details.level"])
        )


def validate_variable_name(name: str) -> None:
    if not _VARIABLE_NAME_RE.fullmatch(name):
        raise ValueValidationError(
            regex_error("must be a proxy variable", VARIABLE_NAME_FMT, ["$request_method", "$http_x_tier"])
        )


def split_match_value(value: str) -> List[str]:
    """
    Split a match value into its operator and operand.

    Returns ["=", literal], ["~", regex] or ["~*", regex] (case-insensitive).
    """
    if value.startswith("~*"):
        return ["~*", value[2:]]
    if value.startswith("~"):
        return ["~", value[1:]]
    return ["=", value]


def validate_match_value(value: str) -> None:
    """
    Validate the value side of a condition.

    Literal values must not expand variables. Regex values (prefixed with '~')
    may use '$' as an anchor but not as a variable reference, and must stay
    within the linear-time subset.
    """
    operator, operand = split_match_value(value)
    if operand == "":
        raise ValueValidationError("cannot be empty")

    if operator == "=":
        validate_escaped_string_no_var_expansion(operand, ["premium", "GET"])
        return

    validate_escaped_string(operand, ["^/api/", "^(GET|HEAD)$"])
    reference = _VARIABLE_REFERENCE_RE.search(operand)
    if reference:
        raise ValueValidationError(
            f"variable reference at position {reference.start()} in regex '{operand}' is not allowed"
        )
    _check_linear_time_regex(operand)
