import json
import click

from rls_guard.api.exceptions import AuthorizationDenied
from rls_guard.database import SessionLocal
from rls_guard.permissions.engine import AccessControlEngine
from rls_guard.permissions.entities import Entity, Operation
from rls_guard.permissions.principal import resolve_principal


def _engine() -> AccessControlEngine:
    engine = AccessControlEngine(session_factory=SessionLocal)
    engine.start()
    return engine


@click.command()
@click.option("--user-id", "-u", "user_id", default=None, help="Actor id, omit for anonymous")
@click.option("--role", "-r", "role", type=click.Choice(["student", "teacher"]), default=None)
@click.option("--entity", "-e", "entity", type=click.Choice([e.value for e in Entity]), required=True)
@click.option("--operation", "-o", "operation", type=click.Choice([o.value for o in Operation]), default="read")
@click.option("--row", "row", required=True, help="Row image as JSON")
@click.option("--values", "values", default=None, help="Update values as JSON")
def check(user_id, role, entity, operation, row, values):
    """Evaluate one operation on one row against the live access index."""

    principal = resolve_principal({"id": user_id, "role": role} if user_id else None)
    engine = _engine()

    decision = engine.evaluate(
        principal, entity, operation, json.loads(row),
        json.loads(values) if values else None,
    )
    click.echo(decision.model_dump_json(indent=2))


@click.command()
@click.argument("user_id")
def user_role(user_id):
    """Print the stored role of a user."""

    engine = _engine()
    role = engine.user_role(user_id)
    if role is None:
        raise click.ClickException(f"Unknown user {user_id}")
    click.echo(role)


@click.command()
@click.option("--user-id", "-u", "user_id", required=True)
@click.option("--role", "-r", "role", type=click.Choice(["student", "teacher"]), required=True)
@click.option("--entity", "-e", "entity", type=click.Choice([e.value for e in Entity]), required=True)
@click.argument("row_id")
@click.argument("values")
def update(user_id, role, entity, row_id, values):
    """Apply an update through the mutation guard."""

    principal = resolve_principal({"id": user_id, "role": role})
    engine = _engine()

    try:
        row = engine.update(principal, entity, row_id, json.loads(values))
    except AuthorizationDenied as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(row, indent=2, default=str))
