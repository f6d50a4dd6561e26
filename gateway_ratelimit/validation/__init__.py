"""
Validation of values embedded in proxy directives.
"""

from .values import (
    DurationValidator, ValueValidationError, convert_duration, parse_size,
    validate_claim_path, validate_escaped_string, validate_escaped_string_no_var_expansion,
    validate_header_name, validate_key_expression, validate_match_value, validate_path,
    validate_path_in_match, validate_path_in_regex_match, validate_rate, validate_size,
    validate_variable_name, validate_zone_name
)

__all__ = [
    "DurationValidator", "ValueValidationError", "convert_duration", "parse_size",
    "validate_claim_path", "validate_escaped_string", "validate_escaped_string_no_var_expansion",
    "validate_header_name", "validate_key_expression", "validate_match_value", "validate_path",
    "validate_path_in_match", "validate_path_in_regex_match", "validate_rate", "validate_size",
    "validate_variable_name", "validate_zone_name"
]
