import logging

import click

from gateway_ratelimit.utils.logging import setup_logging

from .resolve import resolve_cli
from .validate import validate_cli


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enables verbose mode.')
@click.option('--quiet', '-q', is_flag=True, help='Enables quiet mode.')
@click.pass_context
def app(ctx, verbose, quiet):
    """
    gateway-ratelimit policy resolution CLI.
    """
    ctx.ensure_object(dict)
    ctx.obj['VERBOSE'] = verbose
    ctx.obj['QUIET'] = quiet

    if verbose:
        setup_logging(level=logging.DEBUG)
    elif quiet:
        setup_logging(level=logging.ERROR)
    else:
        setup_logging()

# Add subcommands
app.add_command(resolve_cli, name='resolve')
app.add_command(validate_cli, name='validate')

if __name__ == '__main__':
    app()
