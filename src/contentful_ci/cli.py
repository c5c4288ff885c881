"""Contentful CI CLI (contentful-ci).

Usage:
    contentful-ci run                         # Run inside a workflow (reads INPUT_* vars)
    contentful-ci resolve-name "GH-[branch]" --branch feature/x
    contentful-ci list-migrations migrations  # Show local versions in apply order
    contentful-ci pending migrations --last-applied 1.0.1
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .main import execute, setup_logging
from .migrations import MigrationError, discover_migrations, pending_migrations
from .naming import resolve_pattern

CLI_VERSION = "0.1.0"


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="contentful-ci")
def cli() -> None:
    """Contentful CI (contentful-ci).

    Provision a Contentful environment per branch and apply versioned
    migrations to it.

    \b
    Quick Start:
        contentful-ci list-migrations migrations
        contentful-ci resolve-name "master-[YYYY]-[MM]-[DD]-[mm][ss]"
    """
    pass


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option("--space-id", help="Contentful space id (default: INPUT_SPACE_ID)")
@click.option(
    "--migrations-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Migrations directory (default: INPUT_MIGRATIONS_DIR under GITHUB_WORKSPACE)",
)
@click.option("--master-pattern", help="Naming pattern for production environments")
@click.option("--feature-pattern", help="Naming pattern for feature environments")
@click.option("--set-alias/--no-set-alias", default=None, help="Point master alias when done")
@click.option(
    "--delete-feature/--no-delete-feature",
    default=None,
    help="Delete superseded feature environments",
)
@click.option("--verbose", "-v", is_flag=True, default=None, help="Verbose output")
def run(
    space_id: str | None,
    migrations_dir: Path | None,
    master_pattern: str | None,
    feature_pattern: str | None,
    set_alias: bool | None,
    delete_feature: bool | None,
    verbose: bool | None,
) -> None:
    """Provision the branch environment and apply pending migrations.

    Options override the corresponding action inputs.
    """
    overrides: dict[str, Any] = {
        "space_id": space_id,
        "migrations_dir": migrations_dir.resolve() if migrations_dir else None,
        "master_pattern": master_pattern,
        "feature_pattern": feature_pattern,
        "set_alias": set_alias,
        "delete_feature": delete_feature,
        "verbose": verbose,
    }

    try:
        config = Config.from_env()
        config = dataclasses.replace(
            config, **{k: v for k, v in overrides.items() if v is not None}
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(verbose=config.verbose)
    exit_code = asyncio.run(execute(config, logging.getLogger("contentful_ci")))
    sys.exit(exit_code)


# =============================================================================
# Inspection Commands
# =============================================================================


@cli.command("resolve-name")
@click.argument("pattern")
@click.option("--branch", "-b", help="Branch name for the [branch] token")
def resolve_name(pattern: str, branch: str | None) -> None:
    """Print the environment id a naming pattern resolves to now."""
    click.echo(resolve_pattern(pattern, branch))


@cli.command("list-migrations")
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default="migrations",
)
def list_migrations(directory: Path) -> None:
    """List local migration versions in the order they are applied."""
    try:
        migrations = discover_migrations(directory)
    except MigrationError as e:
        raise click.ClickException(str(e)) from e

    if not migrations:
        click.echo("No migrations found")
        return
    for migration in migrations:
        click.echo(f"{migration.version}\t{migration.filename}")


@cli.command()
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default="migrations",
)
@click.option(
    "--last-applied",
    "-l",
    help="Version recorded on the environment (omit when none was applied)",
)
def pending(directory: Path, last_applied: str | None) -> None:
    """Show which migrations a run would apply after a given version."""
    try:
        to_run = pending_migrations(discover_migrations(directory), last_applied)
    except MigrationError as e:
        raise click.ClickException(str(e)) from e

    if not to_run:
        click.secho("Up to date", fg="green")
        return
    for migration in to_run:
        click.echo(migration.version)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
