from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from pgmodel import schema
from pgmodel.cache import new_cache
from pgmodel.client import Client
from pgmodel.config import get_settings
from pgmodel.domain.mapping import Mapping, load_mapping
from pgmodel.errors import PgModelError
from pgmodel.infrastructure.db_factory import get_pool
from pgmodel.utils.logging import configure_logging

app = typer.Typer(help="pgmodel schema and query CLI.")


def _client() -> Client:
    settings = get_settings()
    configure_logging(
        level=settings.log_level, json_logs=settings.log_json, log_sql=settings.log_sql
    )
    return Client(get_pool(), cache=new_cache(settings.cache_capacity))


def _read_mapping(path: Path) -> Mapping:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Cannot read mapping file {path}: {exc}") from exc
    return load_mapping(data)


def _parse_params(values: Optional[List[str]]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected name=value, got '{item}'")
        params[name] = value
    return params


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"pool={settings.pool_min_size}..{settings.pool_max_size} "
        f"timeout={settings.pool_timeout}s cache={settings.cache_capacity} env={settings.app_env}"
    )


@app.command()
def init(mapping_file: Path = typer.Argument(..., help="JSON file with a model mapping.")) -> None:
    """
    Create the table, sequence and indexes of a mapped model.
    """
    mapping = _read_mapping(mapping_file)
    client = _client()
    try:
        with client.transaction():
            schema.init_model(client, mapping)
    finally:
        client.close()
    typer.echo(f"Created {mapping.fqn}")


@app.command()
def drop(mapping_file: Path = typer.Argument(..., help="JSON file with a model mapping.")) -> None:
    """
    Drop the table of a mapped model with its sequences and indexes.
    """
    mapping = _read_mapping(mapping_file)
    client = _client()
    try:
        with client.transaction():
            schema.drop_model(client, mapping)
    finally:
        client.close()
    typer.echo(f"Dropped {mapping.fqn}")


@app.command("drop-all")
def drop_all(
    schema_name: Optional[str] = typer.Option(
        None, "--schema", help="Only drop tables of this schema (default: every user schema)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """
    Drop every table, with its sequences and indexes.
    """
    if not yes:
        typer.confirm(f"Drop all tables of {schema_name or 'every user schema'}?", abort=True)
    client = _client()
    try:
        with client.transaction():
            schema.drop_all(client, schema_name)
    finally:
        client.close()


@app.command()
def query(
    sql: str = typer.Argument(..., help="SQL template, e.g. \"select * from t where id = #{id}\"."),
    param: Optional[List[str]] = typer.Option(
        None, "--param", "-p", help="Template parameter as name=value (repeatable)."
    ),
) -> None:
    """
    Execute a SQL template and print the result as JSON.
    """
    params = _parse_params(param)
    client = _client()
    try:
        result = client.query(sql, params)
    finally:
        client.close()
    typer.echo(json.dumps(result, indent=2, default=str))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
    except PgModelError as exc:
        typer.echo(f"Error: {exc}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
