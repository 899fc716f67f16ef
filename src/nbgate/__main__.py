"""nbgate command line."""

from collections import deque
from pathlib import Path
from typing import Annotated

from typer import Exit, Option, Typer

from nbgate import __version__
from nbgate.constants import (
    DEFAULT_GATEWAY_HOST,
    DEFAULT_GATEWAY_PORT,
    LOG_BUFFER_SIZE,
)
from nbgate.errors import SettingsError
from nbgate.logging import LogBuffer, configure_logging, console
from nbgate.settings import load_settings

app = Typer(name="nbgate", help="Jupyter gateway for a single user session")


@app.command(name="serve", help="Run the gateway in the foreground")
def serve(
    config: Annotated[
        Path | None,
        Option(
            "--config",
            "-c",
            help="Settings JSON file. Defaults to $NBGATE_CONFIG if set",
        ),
    ] = None,
    host: Annotated[str, Option(help="Interface the gateway listens on")] = (
        DEFAULT_GATEWAY_HOST
    ),
    port: Annotated[int, Option(help="Port the gateway listens on")] = (
        DEFAULT_GATEWAY_PORT
    ),
    quiet: Annotated[
        bool, Option("--quiet", "-q", help="Do not echo logs to the console")
    ] = False,
):
    """Load settings and serve until Ctrl+C."""
    try:
        settings = load_settings(config)
    except SettingsError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)

    log_buffer: LogBuffer = deque(maxlen=LOG_BUFFER_SIZE)
    configure_logging(buffer=log_buffer, echo=not quiet)

    from nbgate.server import run_server

    console.print(
        f"[cyan]🚀 Starting nbgate on http://{host}:{port} "
        f"(Jupyter port {settings.jupyter_port})[/cyan]"
    )
    run_server(settings, host, port, log_buffer=log_buffer)


@app.command(name="version", help="Print the nbgate version")
def version():
    console.print(f"nbgate {__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
