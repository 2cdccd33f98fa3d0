"""CLI entry point for kiroweb."""

import click
import uvicorn

from kiroweb.web.settings import KiroWebSettings


@click.group()
def main():
    """Run kiro-cli sessions behind a small web API."""
    pass


@main.command()
@click.option("--port", type=int, default=None, help="Port to serve on (default: KIROWEB_PORT or 4097).")
@click.option("--host", default=None, help="Host to bind to (default: KIROWEB_HOST or 127.0.0.1).")
def serve(port: int | None, host: str | None):
    """Start the web server."""
    settings = KiroWebSettings()
    host = host or settings.host
    port = port or settings.port
    click.echo(f"Starting kiroweb on http://{host}:{port}")
    uvicorn.run("kiroweb.web.app:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
