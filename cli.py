# Simple CLI for the broker gateway
import asyncio
import sys

import click

from app.containers import AppContainer
from core.logging import configure_logging
from core.utils.exceptions import UnsupportedBrokerError


@click.group()
def cli():
    """Broker Gateway CLI"""
    pass


@cli.command()
def run():
    """Run the broker gateway"""
    from app.main import main as run_app
    click.echo("Starting Broker Gateway...")
    sys.exit(asyncio.run(run_app()))


@cli.command()
def sweep():
    """Deactivate every expired broker session in the session store"""
    container = AppContainer()
    configure_logging(container.settings())

    async def _sweep() -> int:
        store = container.session_store()
        try:
            return await store.expire_sweep()
        finally:
            await store.close()

    expired = asyncio.run(_sweep())
    click.echo(f"Expired sessions deactivated: {expired}")


@cli.command()
def brokers():
    """List supported broker types"""
    container = AppContainer()
    factory = container.broker_factory()
    active = set(container.settings().active_brokers)
    for broker in factory.supported_brokers():
        marker = "*" if broker in active else " "
        click.echo(f"{marker} {broker}")


@cli.command("login-url")
@click.argument("broker")
def login_url(broker):
    """Print the authorization URL for BROKER"""
    container = AppContainer()
    try:
        click.echo(container.session_service().get_login_url(broker))
    except UnsupportedBrokerError as e:
        raise click.BadParameter(e.message, param_hint="BROKER")


if __name__ == "__main__":
    cli()
