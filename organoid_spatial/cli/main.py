"""Command-line interface for organoid-spatial.

Provides commands to validate a configuration, run the full analysis and
inspect a saved clustering.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .. import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("organoid_spatial")


def _load_config(config_path: str):
    from organoid_spatial.config import AnalysisConfig
    from organoid_spatial.errors import ParameterError

    try:
        return AnalysisConfig.from_yaml(Path(config_path))
    except ParameterError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version=__version__, prog_name="organoid-spatial")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """organoid-spatial: Visium analysis of skin organoids.

    Loads Space Ranger outputs for several samples, integrates them with
    Harmony, clusters over a resolution ladder and characterizes the
    clusters by markers, module scores and enrichment.

    Examples:

        # Check a configuration and its input files
        organoid-spatial validate --config analysis.yaml

        # Run the full analysis
        organoid-spatial run --config analysis.yaml --out results/

        # Inspect the clusterings stored in a saved run
        organoid-spatial resolutions --input results/analysis.h5ad
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--config", "-c", "config_path", required=True, type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--check-files/--no-check-files", default=True,
              help="Also check that every sample's input files exist")
@click.pass_context
def validate(ctx: click.Context, config_path: str, check_files: bool) -> None:
    """Validate a configuration without loading any data."""
    from organoid_spatial.core.preprocessing import DatasetLoader
    from organoid_spatial.errors import AnalysisError

    config = _load_config(config_path)
    try:
        config.validate()
        loader = DatasetLoader(config.loader)
        samples = loader.resolve_samples()
        loader.validate_samples(samples)
        if check_files:
            for spec in samples:
                loader.check_files(spec)
    except (AnalysisError, FileNotFoundError) as e:
        click.echo(f"Invalid: {e}", err=True)
        sys.exit(2)

    click.echo(f"Configuration OK: {len(samples)} samples")
    for spec in samples:
        click.echo(f"  {spec.sample_id}: {spec.tissue}")
    clu = config.clustering
    click.echo(
        f"Resolutions: {', '.join(f'{r:g}' for r in clu.resolutions)} "
        f"(active {clu.active_resolution:g})"
    )


@cli.command()
@click.option("--config", "-c", "config_path", required=True, type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--resolution", type=float, default=None,
              help="Override the active clustering resolution")
@click.option("--skip-enrichment", is_flag=True, help="Skip marker enrichment")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Run log level")
@click.pass_context
def run(
    ctx: click.Context,
    config_path: str,
    output_path: str,
    resolution: Optional[float],
    skip_enrichment: bool,
    log_level: str,
) -> None:
    """Run the full analysis.

    Stages:
      load, qc, reduce, correct, cluster, select,
      markers, scores, enrichment, export
    """
    from organoid_spatial.errors import AnalysisError, ParameterError
    from organoid_spatial.pipeline import run_analysis

    logger = ctx.obj["logger"]
    config = _load_config(config_path)
    if resolution is not None:
        config.clustering.active_resolution = resolution
    logger.info("Running analysis from %s into %s", config_path, output_path)

    skip = ["enrichment"] if skip_enrichment else []
    try:
        outcome = run_analysis(
            config,
            Path(output_path),
            skip_stages=skip,
            log_level=log_level.upper(),
        )
    except ParameterError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)
    except AnalysisError as e:
        click.echo(f"Analysis failed: {e}", err=True)
        sys.exit(1)

    adata = outcome.adata
    click.echo(f"Analysis complete: {adata.n_obs} spots, {adata.n_vars} genes")
    select = outcome.results.get("select", {})
    if select:
        click.echo(
            f"Active resolution {select['active_resolution']:g}: "
            f"{select['n_clusters']} clusters"
        )
    enrichment = outcome.results.get("enrichment")
    if enrichment is not None and enrichment.failed:
        click.echo(
            f"Enrichment failed for clusters: {', '.join(sorted(enrichment.failed))}",
            err=True,
        )
    if enrichment is not None and enrichment.empty:
        click.echo(f"No enrichment terms for clusters: {', '.join(enrichment.empty)}", err=True)
    click.echo(f"Output saved to: {output_path}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Analysis AnnData file (.h5ad)")
@click.pass_context
def resolutions(ctx: click.Context, input_path: str) -> None:
    """List the clusterings stored in a saved analysis."""
    from organoid_spatial.io import read_h5ad

    adata = read_h5ad(input_path)
    info = adata.uns.get("clustering")
    if not info:
        click.echo("No multi-resolution clustering found", err=True)
        sys.exit(1)

    active = adata.uns.get("active_resolution")
    click.echo(f"{'resolution':>10}  {'clusters':>8}  key")
    for r, key in zip(info["resolutions"], info["keys"]):
        n = adata.obs[key].nunique() if key in adata.obs else 0
        marker = " *" if active is not None and abs(float(r) - float(active)) < 1e-9 else ""
        click.echo(f"{float(r):>10g}  {n:>8d}  {key}{marker}")


@cli.command()
@click.option("--panel-set", default=None, help="Show the panels of one set")
def panels(panel_set: Optional[str]) -> None:
    """List module score panel sets."""
    from organoid_spatial.config import get_panel_set, list_panel_sets

    if panel_set is None:
        for name in list_panel_sets():
            click.echo(name)
        return
    try:
        selected = get_panel_set(panel_set)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    for name, genes in selected.panels.items():
        click.echo(f"{name}: {', '.join(genes)}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
