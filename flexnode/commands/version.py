import typer

from .. import __build_time__, __git_commit__, __version__


def show_version() -> None:
    typer.echo("AKS Flex Node Agent")
    typer.echo(f"Version: {__version__}")
    typer.echo(f"Git Commit: {__git_commit__}")
    typer.echo(f"Build Time: {__build_time__}")
