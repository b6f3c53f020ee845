import logging
import re

import typer
from psycopg import sql

from .config import get_settings
from .containers import TestcontainersEngine
from .drivers.postgresql import PostgresDriver, disconnect_users
from .dsn import parse_url
from .errors import FormatError
from .logging_config import configure_logging

app = typer.Typer()
logger = logging.getLogger(__name__)

STALE_DATABASE = re.compile(r"^t_\d{4}_\d{4}_\d{4}_\d{2}_[0-9a-f]{32}$")


@app.callback()
def main():
    """
    Configure logging for all commands.
    """
    configure_logging(json_output=get_settings().log_json)


@app.command()
def parse_dsn(
    dsn: str = typer.Argument(..., help="Connection string to parse."),
    show_password: bool = typer.Option(False, "--show-password", help="Print the password unmasked."),
) -> None:
    """Parses a connection string and prints its components."""
    try:
        url = parse_url(dsn)
    except FormatError as e:
        logger.error("Invalid connection string.", extra={"error": str(e)})
        raise typer.Exit(code=1)

    typer.echo(f"protocol:  {url.protocol}")
    typer.echo(f"transport: {url.transport}")
    typer.echo(f"user:      {url.user}")
    typer.echo(f"password:  {url.password if show_password else '*****' if url.password else ''}")
    typer.echo(f"host:      {url.host}")
    typer.echo(f"port:      {url.port}")
    typer.echo(f"database:  {url.database}")
    for key in sorted(url.options):
        typer.echo(f"option:    {key}={url.options[key]}")
    typer.echo(f"canonical: {url.to_string(hide_password=not show_password)}")


@app.command()
def ping_docker(
    endpoint: str = typer.Option("", help="Docker daemon endpoint; autodetected when empty."),
) -> None:
    """Checks that the Docker daemon is reachable."""
    endpoint = endpoint or get_settings().docker_socket_endpoint
    try:
        engine = TestcontainersEngine(endpoint)
        try:
            engine.ping()
        finally:
            engine.close()
    except Exception as e:
        logger.exception("Docker daemon is unreachable.", exc_info=e)
        raise typer.Exit(code=1)
    logger.info("Docker daemon is reachable.", extra={"endpoint": endpoint or "auto"})


@app.command()
def drop_stale(
    dsn: str = typer.Argument(..., help="PostgreSQL server to clean up."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list the databases."),
) -> None:
    """Drops test databases left behind on an external PostgreSQL server."""
    driver = PostgresDriver()
    try:
        url = parse_url(dsn)
        conn = driver.open(url)
    except Exception as e:
        logger.exception("Error connecting to the server.", exc_info=e)
        raise typer.Exit(code=1)

    try:
        with conn.cursor() as cur:
            cur.execute("SELECT datname FROM pg_database ORDER BY datname")
            stale = [row[0] for row in cur.fetchall() if STALE_DATABASE.match(row[0])]

        if not stale:
            logger.info("No stale test databases found.")
            return

        logger.info("Found stale test databases.", extra={"count": len(stale), "databases": stale})
        if dry_run:
            return

        failed = 0
        for name in stale:
            try:
                disconnect_users(conn, name)
                conn.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))
                logger.info("Dropped stale test database.", extra={"database": name})
            except Exception as e:
                failed += 1
                logger.exception("Error dropping database.", exc_info=e, extra={"database": name})
        if failed:
            raise typer.Exit(code=1)
    finally:
        conn.close()


if __name__ == "__main__":
    app()
