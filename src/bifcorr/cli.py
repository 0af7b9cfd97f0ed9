"""Command line interface for the bifcorr package."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .demo import run_demo
from .pipeline import run_correlation
from .plotting import generate_plots
from .reporting import export_report
from .streams.ahcal import AhcalFrameDecoder
from .streams.bif import BifFrameDecoder
from .streams.config import load_config
from .streams.errors import CorrelationError

app = typer.Typer(
    add_completion=False,
    help="Correlate BIF and AHCAL raw trigger streams.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def correlate(
    bif_path: Path = typer.Option(..., "--bif", "-b", help="BIF raw data file.", exists=True, readable=True),
    ahcal_path: Path = typer.Option(
        ..., "--ahcal", "-w", help="AHCAL raw data file.", exists=True, readable=True
    ),
    dwc_path: Optional[Path] = typer.Option(
        None, "--dwc", "-d", help="DWC event table (ROOT or CSV).", exists=True, readable=True
    ),
    out: Path = typer.Option(Path("combined.root"), "--out", "-o", help="Merged output (.root or .csv)."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON run configuration."),
    override: Optional[list[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set correlation.window.size=30 --set output.format=csv",
    ),
    report_dir: Optional[Path] = typer.Option(None, "--report", help="Directory for summary and report."),
    plot: bool = typer.Option(False, "--plot", help="Add correlation plots to the report."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Merge the BIF and AHCAL trigger streams into one event table."""

    _setup_logging(verbose)
    try:
        cfg = load_config(config_path, override)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc

    try:
        result = run_correlation(bif_path, ahcal_path, dwc_path, config=cfg, output_path=out)
    except CorrelationError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc

    summary = result.summary
    typer.echo(
        f"{summary.total_rows} rows ({summary.matched_rows} matched, "
        f"{summary.bif_only_rows} BIF only, {summary.ahcal_only_rows} AHCAL only), "
        f"{summary.resyncs} resyncs"
    )
    typer.echo(f"Merged events written to {out}")

    if report_dir is not None:
        figure_path = None
        if plot:
            try:
                figure_path = generate_plots(result, report_dir)
            except RuntimeError as exc:
                typer.echo(f"[warning] plotting skipped: {exc}")
        export_report(
            result,
            report_dir,
            figure_path=figure_path,
            input_paths={"BIF": bif_path, "AHCAL": ahcal_path, "DWC": dwc_path},
        )
        typer.echo(f"Report written to {report_dir}")


@app.command()
def dump(
    bif_path: Optional[Path] = typer.Option(None, "--bif", "-b", help="BIF raw data file.", exists=True),
    ahcal_path: Optional[Path] = typer.Option(None, "--ahcal", "-w", help="AHCAL raw data file.", exists=True),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to print (0 = all)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Print decoded trigger records of a single raw stream."""

    _setup_logging(verbose)
    if (bif_path is None) == (ahcal_path is None):
        raise typer.BadParameter("Provide exactly one of --bif or --ahcal")
    path = bif_path if bif_path is not None else ahcal_path
    assert path is not None
    with path.open("rb") as handle:
        decoder = BifFrameDecoder(handle) if bif_path is not None else AhcalFrameDecoder(handle)
        typer.echo("cycle\ttrigger\tfine_timestamp")
        count = 0
        try:
            for record in decoder:
                if not limit or count < limit:
                    typer.echo(f"{record.cycle}\t{record.trigger_count}\t{record.fine_timestamp}")
                count += 1
        except CorrelationError as exc:
            typer.echo(f"[error] {exc}", err=True)
            raise typer.Exit(code=1) from exc
        stats = decoder.stats()
    typer.echo(f"# {count} records")
    for key, value in stats.items():
        typer.echo(f"# {key}={value}")


@app.command()
def demo(
    out_dir: Path = typer.Option(Path("demo_output"), "--out", help="Target directory for demo files."),
) -> None:
    """Generate synthetic raw streams and correlate them."""

    _setup_logging(False)
    result = run_demo(out_dir)
    typer.echo(
        f"Demo correlated {result.summary.total_rows} rows "
        f"({result.summary.matched_rows} matched); output in {out_dir}"
    )


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
