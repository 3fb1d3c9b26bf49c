"""Catalog Sync CLI using Typer."""

import logging
import os
from pathlib import Path

import typer
from dotenv import load_dotenv

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

from catalog_sync.cli.sync import suppliers_app, sync_app  # noqa: E402

app = typer.Typer(
    name="catalog-sync",
    help="Catalog Sync - incremental supplier catalog synchronization",
    add_completion=False,
)
app.add_typer(sync_app, name="sync")
app.add_typer(suppliers_app, name="suppliers")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _configured(name: str) -> str:
    return "configured" if os.environ.get(name) else "not configured"


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from catalog_sync.db.engine import init_db as db_init

    typer.echo("Initializing database...")
    db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def version() -> None:
    """Show the Catalog Sync version."""
    typer.echo("Catalog Sync v0.1.0")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    typer.echo("Catalog Sync Configuration")
    typer.echo("=" * 40)

    # Check .env file
    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    # Check database
    from catalog_sync.db.engine import get_database_url

    typer.echo(f"  Database: {get_database_url()}")

    # Check registry
    from catalog_sync.ingestion.registry import get_default_registry

    registry = get_default_registry()
    typer.echo(f"  Supplier config: {registry.config_path or 'Not found (using defaults)'}")
    typer.echo(f"  Catalog manifest: {registry.global_config.manifest_url}")
    typer.echo(f"  Suppliers: {len(registry.list_enabled_suppliers())} enabled")

    # Check downstream services
    typer.echo(f"  Redis: {os.environ.get('REDIS_HOST', 'localhost')}:{os.environ.get('REDIS_PORT', '6379')}")
    typer.echo(f"  Meilisearch: {os.environ.get('MEILISEARCH_URL', 'http://localhost:7700')}")
    typer.echo(f"  Pinecone: {_configured('PINECONE_API_KEY')}")
    if os.environ.get("S3_BUCKET"):
        typer.echo(f"  Object storage: s3://{os.environ['S3_BUCKET']}")
    else:
        typer.echo(f"  Object storage: {os.environ.get('OBJECT_STORAGE_PATH', '~/.catalog_sync/assets')}")


if __name__ == "__main__":
    app()
