import logging
from importlib.resources import files
from pathlib import Path
from typing import Optional

import typer
import yaml

app = typer.Typer(help="deflux: differential abundance across studies")


@app.command()
def init(path: Path = typer.Argument(Path("deflux_config.yaml"))):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("deflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., "--config", "-c", help="Path to YAML config file"),
    max_workers: Optional[int] = typer.Option(None, help="Studies run in parallel (default: config, then CPU count)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run every study of the config. Exits with status 1 if any study failed.
    """
    from deflux.main import run_pipeline
    from deflux.utils.cli_setup import configure_cli_display
    from deflux.utils.utils import setup_logging

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    configure_cli_display()

    config_data = yaml.safe_load(config.read_text())
    if not isinstance(config_data, dict):
        typer.echo(f"{config} does not hold a YAML mapping.", err=True)
        raise typer.Exit(code=2)

    report = run_pipeline(config=config_data, max_workers=max_workers)
    if not report.ok:
        for name in report.failed:
            outcome = report.outcomes[name]
            typer.echo(f"{name}: {outcome.error_kind}: {outcome.error_message}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
