import asyncio

import click
import uvicorn
from pathlib import Path

from shipline.auth import issue_token
from shipline.config import config
from shipline.exceptions import AuthError, ConfigurationError
from shipline.notify import summarize
from shipline.runner import Runner, load_shipfile
from shipline.runner.gate import AutoApprover, ConsoleApprover


@click.group()
def cli():
    pass


@cli.command()
@click.argument('shipfile', type=click.Path(path_type=Path), required=False)
@click.option('-y', '--yes', is_flag=True, help='Approve every gate without asking')
@click.option('--branch', help='Override the branch to check out')
@click.option('--tag', help='Override the image tag')
def run(shipfile: Path | None, yes: bool, branch: str | None, tag: str | None):
    """Run the pipeline described by SHIPFILE."""
    try:
        definition = load_shipfile(shipfile or config.shipfile).with_overrides(
            branch=branch, tag=tag
        )
    except (ConfigurationError, ValueError) as e:
        raise click.ClickException(str(e))

    approver = AutoApprover() if yes else ConsoleApprover()
    runner = Runner(definition, approver)
    result = asyncio.run(runner.run())
    click.echo(summarize(result))
    if not result.succeeded:
        raise SystemExit(1)


@cli.command()
def server():
    """Serve the trigger and approval API."""
    from shipline.web import app

    uvicorn.run(app, host=config.host, port=config.port)


@cli.command()
@click.argument('actor')
@click.option('--ttl', type=int, help='Lifetime in seconds')
def token(actor: str, ttl: int | None):
    """Issue an approval token for ACTOR."""
    try:
        click.echo(issue_token(actor, ttl))
    except AuthError as e:
        raise click.ClickException(str(e))


if __name__ == '__main__':
    cli(prog_name='shipline')
