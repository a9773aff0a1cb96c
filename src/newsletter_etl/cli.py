"""newsletter_etl.cli

CLI entrypoint for the groups → tags / subscribers → contacts migration.

Usage (all sites):
    python -m newsletter_etl.cli --db-dsn "$DB_DSN"

Usage (one site, custom tag colors, no writes):
    python -m newsletter_etl.cli \\
        --db-dsn "$DB_DSN" \\
        --site-id 42 \\
        --tag-config config/tag_defaults.yml \\
        --dry-run
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from newsletter_etl.migrate_groups_to_tags import TagMigration
from newsletter_etl.normalize import parse_site_id
from newsletter_etl.shared import (
    CollaboratorError,
    InvocationError,
    RunCounters,
    write_run_report,
)
from newsletter_etl.storage import PostgresStorage
from newsletter_etl.tag_config import (
    DEFAULT_TAG_DEFAULTS,
    TagConfigValidationError,
    load_tag_defaults,
)


@click.command()
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (env: DB_DSN)")
@click.option("--site-id", default=None, help="Migrate only this site; omit for all sites")
@click.option(
    "--tag-config",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file overriding tag colors and descriptions",
)
@click.option("--dry-run", is_flag=True, default=False, help="Run, then roll back")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Directory for the JSON run report",
)
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    db_dsn: str,
    site_id: str | None,
    tag_config: str | None,
    dry_run: bool,
    run_id: str | None,
    report_dir: str,
    log_level: str,
) -> None:
    """Migrate newsletter groups to tags and subscribers to contacts."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    logging.basicConfig(
        level=log_level.upper(),
        format=f"%(asctime)s [{run_id}] %(levelname)s %(name)s: %(message)s",
    )

    # Argument validation happens before any connection is opened.
    try:
        site = parse_site_id(site_id)
        defaults = load_tag_defaults(Path(tag_config)) if tag_config else DEFAULT_TAG_DEFAULTS
    except (InvocationError, TagConfigValidationError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    scope = f"site {site}" if site is not None else "ALL sites"
    click.echo(f"[{run_id}] Starting migration for {scope} (dry_run={dry_run})")

    counters = RunCounters()
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: could not connect: {exc}", err=True)
        sys.exit(1)

    try:
        migration = TagMigration(PostgresStorage(conn), tag_defaults=defaults)
        try:
            result = migration.reconcile(site, counters)
        except CollaboratorError as exc:
            conn.rollback()
            click.echo(f"[{run_id}] FATAL: migration failed: {exc}", err=True)
            sys.exit(1)

        try:
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
            else:
                conn.commit()
                click.echo(f"[{run_id}] Committed.")
        except psycopg.Error as exc:
            action = "rollback" if dry_run else "commit"
            click.echo(f"[{run_id}] FATAL: {action} failed: {exc}", err=True)
            sys.exit(1)
    finally:
        conn.close()

    try:
        report_path = write_run_report(
            run_id, started_at, dry_run, site, defaults.yaml_hash,
            result, counters, report_dir=Path(report_dir),
        )
    except OSError as exc:
        click.echo(f"[{run_id}] FATAL: could not write run report: {exc}", err=True)
        sys.exit(1)
    click.echo(
        f"[{run_id}] Done: {result.groups_migrated} groups migrated, "
        f"{result.contacts_created} unique contacts, "
        f"{result.total_subscriber_records} subscriber records, "
        f"{len(counters.warnings)} warnings"
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
