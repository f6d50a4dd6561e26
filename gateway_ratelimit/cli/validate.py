import sys
from typing import Callable

import click
from rich.console import Console
from rich.markup import escape

from gateway_ratelimit.validation import (
    ValueValidationError, convert_duration, validate_escaped_string,
    validate_escaped_string_no_var_expansion, validate_header_name, validate_path,
    validate_path_in_match, validate_path_in_regex_match
)

console = Console()


def _run(value: str, validator: Callable[[str], object]) -> None:
    try:
        normalized = validator(value)
    except ValueValidationError as e:
        console.print(f"[red]Invalid:[/red] {escape(str(e))}")
        sys.exit(1)

    if isinstance(normalized, str) and normalized != value:
        console.print(f"[green]Valid:[/green] {escape(value)} -> {escape(normalized)}")
    else:
        console.print(f"[green]Valid:[/green] {escape(value)}")


@click.group(name='validate')
def validate_cli():
    """Check values before they are embedded in proxy directives."""
    pass


@validate_cli.command(name='path')
@click.argument('value')
def path(value: str) -> None:
    """Validates a path; an empty value is accepted."""
    _run(value, validate_path)


@validate_cli.command(name='match-path')
@click.argument('value')
def match_path(value: str) -> None:
    """Validates a path used in an exact or prefix match."""
    _run(value, validate_path_in_match)


@validate_cli.command(name='regex-path')
@click.argument('value')
def regex_path(value: str) -> None:
    """Validates a path used in a regex match."""
    _run(value, validate_path_in_regex_match)


@validate_cli.command(name='header')
@click.argument('value')
def header(value: str) -> None:
    """Validates an HTTP header name."""
    _run(value, validate_header_name)


@validate_cli.command(name='escaped')
@click.argument('value')
@click.option('--no-var-expansion', is_flag=True, help='Also reject any $.')
def escaped(value: str, no_var_expansion: bool) -> None:
    """Validates a string placed between double quotes."""
    _run(value, validate_escaped_string_no_var_expansion if no_var_expansion else validate_escaped_string)


@validate_cli.command(name='duration')
@click.argument('value')
def duration(value: str) -> None:
    """Converts a duration into the proxy's single-unit format."""
    _run(value, convert_duration)
