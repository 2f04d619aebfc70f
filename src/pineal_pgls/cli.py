import logging
from pathlib import Path
from typing import Optional

import click
import pandas as pd

from pineal_pgls.annotation.tables import MappingTableCache
from pineal_pgls.config import (
    CONFLICT_POLICIES,
    OrthologConfig,
    PGLSConfig,
    PipelineConfig,
    QuantConfig,
    SelectionConfig,
)
from pineal_pgls.errors import ConfigValidationError, PipelineIntegrityError
from pineal_pgls.export import ARTIFACT_NAMES, write_table
from pineal_pgls.pipeline import biomart_client, run_pipeline
from pineal_pgls.samples import load_sample_sheet
from pineal_pgls.selector import HitSelector


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Cross-species PGLS differential expression for a binary trait."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@click.option(
    "--samples",
    "sample_sheet",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample sheet (CSV or TSV) with accession, species, organism, calcifies.",
)
@click.option(
    "--tree",
    "tree_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Newick species tree with branch lengths.",
)
@click.option(
    "--traits",
    "trait_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Optional species,trait table overriding the sample sheet labels.",
)
@click.option(
    "--quant-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory holding <accession>/abundance.tsv or <accession>/quant.sf.",
)
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path),
    default=Path("results"),
    show_default=True,
    help="Directory to write result tables.",
)
@click.option(
    "--reference-species",
    default="Human",
    show_default=True,
    help="Species whose gene symbols define the merged namespace.",
)
@click.option(
    "--abundance",
    type=click.Choice(["counts", "tpm"]),
    default="counts",
    show_default=True,
    help="Abundance column to aggregate to genes.",
)
@click.option(
    "--conflict-policy",
    type=click.Choice(CONFLICT_POLICIES),
    default="drop_both_species",
    show_default=True,
    help="How to treat genes in more than one orthology pair.",
)
@click.option(
    "--workers",
    type=click.IntRange(1, 256),
    default=None,
    help="Worker processes for per-gene fits (default: PINEAL_PGLS_WORKERS or 1).",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Mapping table cache (default: PINEAL_PGLS_CACHE_DIR or ~/.pineal_pgls).",
)
@click.option("--offline", is_flag=True, help="Use cached mapping tables only.")
@click.option(
    "--fdr",
    type=click.FloatRange(0.0, 1.0, min_open=True),
    default=0.05,
    show_default=True,
    help="Adjusted p-value threshold for both models.",
)
@click.option(
    "--min-log2fc",
    type=click.FloatRange(0.0),
    default=1.0,
    show_default=True,
    help="Absolute log2 fold change threshold for both models.",
)
@click.option(
    "--max-lambda",
    type=click.FloatRange(0.0, 1.0),
    default=0.7,
    show_default=True,
    help="Upper bound on the fitted Pagel's lambda.",
)
@click.option(
    "--top-n",
    type=click.IntRange(1),
    default=50,
    show_default=True,
    help="Number of ranked hits written to top_hits.csv.",
)
def run_command(
    sample_sheet: Path,
    tree_path: Path,
    trait_path: Optional[Path],
    quant_dir: Optional[Path],
    output_dir: Path,
    reference_species: str,
    abundance: str,
    conflict_policy: str,
    workers: Optional[int],
    cache_dir: Optional[Path],
    offline: bool,
    fdr: float,
    min_log2fc: float,
    max_lambda: float,
    top_n: int,
) -> None:
    """Harmonize expression across species and run the PGLS screen."""
    try:
        overrides = dict(
            reference_species=reference_species,
            cache_dir=cache_dir,
            quant=QuantConfig(quant_dir=quant_dir, abundance=abundance),
            orthologs=OrthologConfig(conflict_policy=conflict_policy),
            selection=SelectionConfig(
                fdr_threshold=fdr,
                log2fc_threshold=min_log2fc,
                max_lambda=max_lambda,
                top_n=top_n,
            ),
        )
        if workers is not None:
            overrides["pgls"] = PGLSConfig(workers=workers)
        if offline:
            overrides["offline"] = True
        config = PipelineConfig.from_env(**overrides)

        result = run_pipeline(sample_sheet, tree_path, config=config, trait_path=trait_path)
        paths = result.write(output_dir)
    except (PipelineIntegrityError, ConfigValidationError) as exc:
        raise click.ClickException(str(exc)) from exc

    prov = result.provenance
    click.echo(f"Species: {len(result.samples)}")
    click.echo(f"Combined genes: {prov.n_combined_genes}")
    click.echo(f"Genes tested: {prov.n_filtered_genes}")
    click.echo(
        f"Fit failures: {prov.n_bm_failures} Brownian, {prov.n_lambda_failures} lambda"
    )
    click.echo(f"Hits: {prov.n_hits}")
    click.echo(f"Results written to {paths['results'].parent}")


@cli.command("fetch-tables")
@click.option(
    "--samples",
    "sample_sheet",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample sheet naming the organisms to fetch tables for.",
)
@click.option(
    "--reference-species",
    default="Human",
    show_default=True,
    help="Species whose gene symbol table is also fetched.",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Mapping table cache (default: PINEAL_PGLS_CACHE_DIR or ~/.pineal_pgls).",
)
def fetch_tables_command(
    sample_sheet: Path,
    reference_species: str,
    cache_dir: Optional[Path],
) -> None:
    """Download transcript->gene and symbol tables into the cache."""
    try:
        config = PipelineConfig.from_env(
            reference_species=reference_species, cache_dir=cache_dir
        )
        samples = load_sample_sheet(sample_sheet, reference_species)
        tables = MappingTableCache(config.cache_dir, client=biomart_client(config))
        for organism in sorted({s.organism for s in samples}):
            n = len(tables.tx2gene(organism))
            click.echo(f"{organism}: {n} transcripts -> {tables.tx2gene_path(organism)}")

        reference = next(s for s in samples if s.species == reference_species)
        symbols = tables.symbols(reference.organism, config.orthologs.symbol_attribute)
        click.echo(
            f"{reference.organism}: {len(symbols)} gene symbols -> "
            f"{tables.symbols_path(reference.organism)}"
        )
    except (PipelineIntegrityError, ConfigValidationError) as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("select")
@click.option(
    "--results-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Output directory of a previous run.",
)
@click.option("--fdr", type=click.FloatRange(0.0, 1.0, min_open=True), default=0.05, show_default=True)
@click.option("--min-log2fc", type=click.FloatRange(0.0), default=1.0, show_default=True)
@click.option("--max-lambda", type=click.FloatRange(0.0, 1.0), default=0.7, show_default=True)
@click.option("--top-n", type=click.IntRange(1), default=50, show_default=True)
def select_command(
    results_dir: Path,
    fdr: float,
    min_log2fc: float,
    max_lambda: float,
    top_n: int,
) -> None:
    """Re-select hits from an existing results table with new thresholds."""
    results_path = results_dir / ARTIFACT_NAMES["results"]
    if not results_path.exists():
        raise click.ClickException(f"No results table at {results_path}")

    # gene symbols such as "NA" must stay strings
    table = pd.read_csv(results_path, keep_default_na=False, na_values=[""])
    selector = HitSelector(
        SelectionConfig(
            fdr_threshold=fdr,
            log2fc_threshold=min_log2fc,
            max_lambda=max_lambda,
            top_n=top_n,
        )
    )
    hits = selector.select(table)
    write_table(hits, results_dir / ARTIFACT_NAMES["hits"], index=False)
    write_table(selector.top(hits), results_dir / ARTIFACT_NAMES["top_hits"], index=False)
    click.echo(f"Hits: {len(hits)} of {len(table)} genes")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
