import click

from rls_guard.database import get_engine
from rls_guard.model import metadata


@click.command()
def init_db():
    """Create the schema in the configured database."""

    metadata.create_all(get_engine())
    click.echo(click.style("Schema created", fg="green"))
