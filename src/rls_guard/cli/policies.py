import json
import click

from rls_guard.permissions.policies import get_policy_set


@click.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the rule table as JSON")
def show_policies(as_json: bool):
    """Print the loaded policy table, its version and hash."""

    policy_set = get_policy_set()
    rules = policy_set.describe()

    if as_json:
        click.echo(json.dumps({
            "version": policy_set.version,
            "policy_hash": policy_set.policy_hash,
            "rules": rules,
        }, indent=2))
        return

    click.echo(f"Policy set v{policy_set.version} ({policy_set.policy_hash})")
    for rule in rules:
        roles = ",".join(rule["roles"]) if rule["roles"] else "any"
        columns = ",".join(rule["write_columns"]) if rule["write_columns"] is not None else "*"
        if rule["denied_columns"]:
            columns += " -" + ",".join(rule["denied_columns"])
        click.echo(
            f"  {rule['entity']:<22} {'/'.join(rule['operations']):<22} "
            f"{roles:<8} {columns:<40} {rule['description']}"
        )
