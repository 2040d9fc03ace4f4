"""
CLI interface for dbforge.

Builds PostgreSQL databases from extension directories:

    dbforge build -d dev -e ~/src/app -e ~/src/app/extensions/crm
    dbforge build -d dev -e ~/src/app -i -b ~/backups/demo.backup
    dbforge build --request builds.yaml

Credentials and build settings come from <dbforge home>/config.yaml.
"""

import asyncio
import json
from pathlib import Path

import click
import yaml

from dbforge import __version__


def _load_installer(config):
    from dbforge.orm import load_orm_installer

    if not config.orm_installer:
        return None
    try:
        return load_orm_installer(config.orm_installer)
    except (ValueError, TypeError) as e:
        raise click.ClickException(str(e))


def _collect_specs(request, databases, extensions, initialize, backup):
    from dbforge.build_spec import BuildRequestError, load_build_request, parse_build_request

    if request and (databases or extensions):
        raise click.UsageError("--request cannot be combined with --database/--extension")
    if initialize and not backup:
        raise click.UsageError("--initialize requires --backup")

    try:
        if request:
            return load_build_request(Path(request))
        if not databases:
            raise click.UsageError("Provide --database (or --request)")
        if not extensions:
            raise click.UsageError("Provide at least one --extension")
        return parse_build_request([
            {
                "database": db,
                "extensions": list(extensions),
                "initialize": initialize,
                "backup": backup,
            }
            for db in databases
        ])
    except (FileNotFoundError, BuildRequestError) as e:
        raise click.UsageError(str(e))


@click.group()
@click.version_option(version=__version__, prog_name="dbforge")
@click.pass_context
def main(ctx):
    """
    dbforge - Build PostgreSQL databases from extension scripts.
    """
    from dbforge.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # `init` runs without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'dbforge init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize dbforge configuration."""
    from dbforge.config import default_config_dict, get_dbforge_home

    home = get_dbforge_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# DBFORGE_DB_PASSWORD=...\n")

    click.echo(f"Initialized dbforge config at {cfg_path}")


@main.command("build")
@click.option("-d", "--database", "databases", multiple=True, help="Target database (repeatable)")
@click.option("-e", "--extension", "extensions", multiple=True, help="Extension directory, in install order (repeatable)")
@click.option("-i", "--initialize", is_flag=True, help="Drop and recreate the database from --backup first")
@click.option("-b", "--backup", type=click.Path(), help="Backup file restored with pg_restore")
@click.option("-r", "--request", type=click.Path(), help="YAML/JSON build request with several databases")
@click.option("--dry-run", is_flag=True, help="Print each aggregate script instead of executing it")
@click.option("-o", "--output", type=click.Path(file_okay=False), help="With --dry-run, write <database>.sql files here")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
@click.pass_context
def build(ctx, databases, extensions, initialize, backup, request, dry_run, output, as_json):
    """
    Build one or more databases.

    Extensions are installed in the order given. With several --database
    options every database gets the same extension list.

    Examples:

        dbforge build -d dev -e ~/src/app -e ~/src/app/extensions/crm

        dbforge build -d dev -e ~/src/app -i -b ~/backups/demo.backup

        dbforge build --request builds.yaml

        dbforge build -d dev -e ~/src/app --dry-run > dev.sql
    """
    from dbforge.utils import setup_logging

    config = _require_config(ctx)
    specs = _collect_specs(request, databases, extensions, initialize, backup)
    installer = _load_installer(config)

    if dry_run:
        _dry_run(config, specs, installer, output)
        return

    from dbforge.builder import Builder
    from dbforge.utils import format_duration, print_banner, print_error, print_success, print_warning

    logger = setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=not as_json,
    )
    if not as_json:
        print_banner(f"Building {', '.join(s.database for s in specs)}")
    builder = Builder.from_config(config, installer=installer, logger=logger)
    result = asyncio.run(builder.run(specs))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        if result.reset_performed:
            print_warning(f"{specs[0].database} was reset from {specs[0].backup}")
        for db_result in result.results:
            duration = format_duration(db_result.duration_ms / 1000)
            if db_result.success:
                print_success(
                    f"{db_result.database}: {db_result.script_count} scripts "
                    f"from {db_result.extension_count} extensions ({duration})"
                )
            else:
                print_error(f"{db_result.database}: {db_result.error}")
        if not result.results and result.first_error is not None:
            print_error(f"Reset failed: {result.first_error}")

    if not result.success:
        raise SystemExit(1)


def _dry_run(config, specs, installer, output):
    """Build every aggregate against an empty registry and print or save it."""
    from dbforge.build_spec import Registry
    from dbforge.errors import DbforgeError
    from dbforge.installer import build_aggregate
    from dbforge.utils import print_info

    async def _build_all():
        return await asyncio.gather(*(
            build_aggregate(spec, Registry.empty(), installer, config.notice_language)
            for spec in specs
        ))

    try:
        aggregates = asyncio.run(_build_all())
    except DbforgeError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if output:
        out_dir = Path(output)
        out_dir.mkdir(parents=True, exist_ok=True)
        for spec, aggregate in zip(specs, aggregates):
            path = out_dir / f"{spec.database}.sql"
            path.write_text(aggregate.sql)
            print_info(f"Wrote {aggregate.script_count} scripts to {path}")
        return

    for spec, aggregate in zip(specs, aggregates):
        if len(specs) > 1:
            click.echo(f"-- database: {spec.database}")
        click.echo(aggregate.sql, nl=False)


@main.command("manifest")
@click.argument("extension", type=click.Path())
def show_manifest(extension: str):
    """Show the ordered scripts of an EXTENSION directory."""
    from dbforge.errors import DbforgeError
    from dbforge.manifest import get_source_root, load_manifest
    from dbforge.orm import get_orm_dir

    try:
        manifest = load_manifest(extension)
    except DbforgeError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Extension: {manifest.name or extension}")
    if manifest.version:
        click.echo(f"Version: {manifest.version}")
    click.echo(f"Source root: {get_source_root(extension)}")
    click.echo(f"ORM directory: {'yes' if get_orm_dir(extension).is_dir() else 'no'}")
    click.echo(f"Scripts ({len(manifest.database_scripts)}):")
    for filename in manifest.database_scripts:
        click.echo(f"  {filename}")


@main.command("installers")
def list_installers():
    """List ORM installers registered by installed packages."""
    from dbforge.orm import discover_orm_installers

    installers = discover_orm_installers()
    if not installers:
        click.echo("No ORM installers found.")
        return
    for name in sorted(installers):
        click.echo(name)


if __name__ == "__main__":
    main()
