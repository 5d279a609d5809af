import logging
from importlib.resources import files
from pathlib import Path

import typer
import yaml

app = typer.Typer(help="methylflux: differential methylation scoring")


@app.command()
def init(path: Path = typer.Argument(Path("methylflux_config.yaml"))):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("methylflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file", exists=True, dir_okay=False),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the methylflux pipeline from a YAML config.
    """
    # Lazy import keeps `init` fast.
    from methylflux.main import run_pipeline
    from methylflux.utils.utils import logger

    if verbose:
        logger.setLevel(logging.DEBUG)

    config_data = yaml.safe_load(config.read_text()) or {}
    if not isinstance(config_data, dict):
        raise typer.BadParameter("Config must be a YAML mapping.", param_hint="--config")

    run_pipeline(config=config_data)


if __name__ == "__main__":
    app()
