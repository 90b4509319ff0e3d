import logging
import click

from rls_guard.settings import settings
from .policies import show_policies
from .check import check, update, user_role
from .database import init_db


@click.group()
def cli():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

cli.add_command(show_policies, "policies")
cli.add_command(check, "check")
cli.add_command(update, "update")
cli.add_command(user_role, "role")
cli.add_command(init_db, "init-db")

if __name__ == '__main__':
    cli()
