import logging
import signal
import sys

import typer

from .commands.agent import run_agent
from .commands.unbootstrap import run_unbootstrap
from .commands.version import show_version
from .logging import setup_logging
from .utils import CancelToken

logger = logging.getLogger("flexnode")

app = typer.Typer(help="AKS Flex Node Agent - join this machine to an AKS cluster through Azure Arc.")

# Global options shared by the commands
state = {"debug": False}


def install_signal_handlers(token: CancelToken) -> None:
    """Cancel ``token`` on SIGINT/SIGTERM so waits and polls stop promptly."""
    def handler(signum, frame):
        print("Received shutdown signal, cancelling operations...", file=sys.stderr)
        token.cancel()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """AKS Flex Node Agent."""
    state["debug"] = debug
    setup_logging("debug" if debug else "info")
    if debug:
        logger.debug("Debug mode enabled")


@app.command("agent")
def agent_cmd(
    config: str = typer.Option(..., "--config", "-c", help="Path to configuration file"),
):
    """Bootstrap this node, then run the status and self-healing daemon."""
    token = CancelToken()
    install_signal_handlers(token)
    run_agent(config, token, debug=state["debug"])


@app.command("unbootstrap")
def unbootstrap_cmd(
    config: str = typer.Option(..., "--config", "-c", help="Path to configuration file"),
):
    """Remove AKS node configuration and Arc connection from this machine."""
    token = CancelToken()
    install_signal_handlers(token)
    run_unbootstrap(config, token, debug=state["debug"])


@app.command("version")
def version_cmd():
    """Show version, build commit and build time."""
    show_version()


if __name__ == "__main__":
    app()
