"""Command-line interface for degflow."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from degflow.errors import MissingReferenceLevelError, ShapeMismatchError
from degflow.io import read_dataset, write_table
from degflow.normalization import NORM_METHODS
from degflow.pipeline import AnalysisConfig, run_analysis

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _parse_design(value: str):
    if "~" in value:
        return value
    return tuple(v.strip() for v in value.split(",") if v.strip())


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Differential expression analysis of RNA-seq counts."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@cli.command("run")
@click.option(
    "--counts",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Count table: gene ids in the first column, one column per sample.",
)
@click.option(
    "--samples",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample sheet: sample ids in the first column, covariates after.",
)
@click.option(
    "--genes",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Optional gene annotation table.",
)
@click.option("--reference", default=None, help="Reference level of the tested factor.")
@click.option(
    "--design",
    default="group",
    show_default=True,
    help="Comma-separated covariates (tested one last) or a formula like '~ batch + group'.",
)
@click.option("--coef", default=None, help="Coefficient to test (default: last column).")
@click.option(
    "--top",
    "top_n",
    type=click.IntRange(1, None),
    default=10,
    show_default=True,
    help="Number of top genes to report.",
)
@click.option(
    "--test",
    type=click.Choice(["lrt", "wald"]),
    default="lrt",
    show_default=True,
    help="Per-gene test.",
)
@click.option(
    "--norm-method",
    type=click.Choice(list(NORM_METHODS)),
    default="TMM",
    show_default=True,
    help="Normalization method.",
)
@click.option(
    "--workers",
    "n_workers",
    type=int,
    default=1,
    show_default=True,
    help="Worker threads for per-gene computations (-1 for all cores).",
)
@click.option("--filter", "filter_genes", is_flag=True, help="Drop lowly expressed genes first.")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the table here instead of standard output.",
)
@click.option("--sep", default=",", show_default=True, help="Output field separator.")
def run_command(
    counts: Path,
    samples: Path,
    genes: Optional[Path],
    reference: Optional[str],
    design: str,
    coef: Optional[str],
    top_n: int,
    test: str,
    norm_method: str,
    n_workers: int,
    filter_genes: bool,
    output: Optional[Path],
    sep: str,
) -> None:
    """Rank genes by differential expression between conditions."""
    if n_workers == 0:
        raise click.BadParameter("must be non-zero", param_hint="--workers")
    data = read_dataset(counts, samples, genes)
    config = AnalysisConfig(
        reference=reference,
        design=_parse_design(design),
        coef=int(coef) if coef is not None and coef.lstrip("-").isdigit() else coef,
        top_n=top_n,
        test=test,
        norm_method=norm_method,
        n_workers=n_workers,
        filter=filter_genes,
    )
    try:
        top, _ = run_analysis(data["counts"], data["samples"], data["genes"], config)
    except (ShapeMismatchError, MissingReferenceLevelError) as exc:
        raise click.UsageError(str(exc)) from exc

    text = write_table(top, output, sep=sep)
    if text is not None:
        click.echo(text, nl=False)
    else:
        click.echo(f"Wrote {len(top)} genes to {output}", err=True)
    if top["n.undefined"]:
        click.echo(f"{top['n.undefined']} gene(s) have undefined results", err=True)


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
