"""
Pipeline orchestrator.

Runs the stages in order, each consuming the previous stage's output:

1. load per-species gene counts from transcript abundances
2. re-key the reference species by gene symbol
3. map every other species onto reference symbols through orthologs
4. merge into one zero-filled matrix and drop all-zero genes
5. fit Brownian and lambda PGLS models per gene, BH-correct
6. select and rank hits
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from pineal_pgls.annotation.biomart import BiomartClient
from pineal_pgls.annotation.http_utils import RetryPolicy, create_session
from pineal_pgls.annotation.tables import MappingTableCache
from pineal_pgls.config import PipelineConfig
from pineal_pgls.export import write_outputs
from pineal_pgls.harmonize.merger import drop_zero_genes, merge_matrices
from pineal_pgls.harmonize.orthologs import (
    BiomartHomologBackend,
    GProfilerOrthBackend,
    OrthologResolver,
    map_to_reference,
)
from pineal_pgls.harmonize.quant_loader import load_gene_counts
from pineal_pgls.harmonize.symbols import build_symbol_map, normalize_reference
from pineal_pgls.model import (
    CombinedMatrix,
    FilteredMatrix,
    GeneCountMatrix,
    RunProvenance,
    Sample,
)
from pineal_pgls.phylo.engine import run_engine
from pineal_pgls.phylo.tree import PhylogeneticTree
from pineal_pgls.samples import default_display_order, load_sample_sheet, trait_table
from pineal_pgls.selector import HitSelector

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything a run produces."""

    samples: List[Sample]
    combined: CombinedMatrix
    filtered: FilteredMatrix
    results: pd.DataFrame
    hits: pd.DataFrame
    top_hits: pd.DataFrame
    hit_expression: pd.DataFrame
    provenance: RunProvenance

    def write(self, output_dir: Union[str, Path]) -> Dict[str, Path]:
        return write_outputs(
            Path(output_dir),
            combined=self.combined.counts,
            filtered=self.filtered.counts,
            results=self.results,
            hits=self.hits,
            top_hits=self.top_hits,
            hit_expression=self.hit_expression,
            provenance=self.provenance,
        )


def retry_policy(config: PipelineConfig) -> RetryPolicy:
    return RetryPolicy(max_retries=config.max_retries, backoff_factor=config.retry_backoff)


def biomart_client(config: PipelineConfig) -> BiomartClient:
    """BioMart client on a session carrying the configured retry policy."""
    return BiomartClient(url=config.biomart_url, session=create_session(retry_policy(config)))


def default_resolver(config: PipelineConfig) -> OrthologResolver:
    """g:Orth first, BioMart homologs as fallback."""
    return OrthologResolver(
        primary=GProfilerOrthBackend(
            batch_size=config.orthologs.batch_size, policy=retry_policy(config)
        ),
        fallback=BiomartHomologBackend(biomart_client(config)),
        conflict_policy=config.orthologs.conflict_policy,
    )


def harmonize(
    samples: List[Sample],
    config: PipelineConfig,
    tables: MappingTableCache,
    resolver: OrthologResolver,
    provenance: RunProvenance,
) -> Dict[str, GeneCountMatrix]:
    """Stages 1-3: symbol-keyed matrices for every species."""
    reference = config.reference_species
    matrices = load_gene_counts(samples, tables, config.quant)
    provenance.genes_per_species = {sp: m.n_genes for sp, m in matrices.items()}

    organisms = {s.species: s.organism for s in samples}
    reference_organism = organisms[reference]

    symbol_table = tables.symbols(reference_organism, config.orthologs.symbol_attribute)
    symbol_map = build_symbol_map(symbol_table)
    harmonized = {reference: normalize_reference(matrices[reference], symbol_map)}

    others = {sp: m for sp, m in matrices.items() if sp != reference}
    ortholog_maps = resolver.resolve_all(
        others,
        organisms,
        reference_organism,
        symbol_map,
        max_workers=min(len(others), config.orthologs.max_workers),
    )
    for species, matrix in others.items():
        harmonized[species] = map_to_reference(matrix, ortholog_maps[species])
        provenance.ortholog_backends[species] = ortholog_maps[species].backend

    provenance.mapped_genes_per_species = {sp: m.n_genes for sp, m in harmonized.items()}
    # keep sample-sheet column order
    return {s.species: harmonized[s.species] for s in samples}


def run_pipeline(
    sample_sheet: Union[str, Path],
    tree_path: Union[str, Path],
    config: Optional[PipelineConfig] = None,
    trait_path: Optional[Union[str, Path]] = None,
    tables: Optional[MappingTableCache] = None,
    resolver: Optional[OrthologResolver] = None,
) -> PipelineResult:
    """
    Run the full analysis.

    Args:
        sample_sheet: Sample sheet (CSV/TSV)
        tree_path: Newick species tree with branch lengths
        config: Run configuration (defaults from the environment)
        trait_path: Optional species -> trait table overriding the sheet
        tables: Mapping-table cache (built from config if None)
        resolver: Ortholog resolver (g:Orth with BioMart fallback if None)

    Returns:
        PipelineResult with every intermediate and final table
    """
    config = config or PipelineConfig.from_env()
    reference = config.reference_species

    samples = load_sample_sheet(sample_sheet, reference)
    traits = trait_table(samples, trait_path)
    tree = PhylogeneticTree.from_newick(tree_path)
    tree.validate_tips(s.species for s in samples)

    tables = tables or MappingTableCache(
        config.cache_dir,
        client=biomart_client(config),
        offline=config.offline,
    )
    resolver = resolver or default_resolver(config)
    provenance = RunProvenance.create(reference, samples, config.to_dict())

    logger.info("Harmonizing %d species onto %s symbols", len(samples), reference)
    harmonized = harmonize(samples, config, tables, resolver, provenance)

    combined = merge_matrices(harmonized, reference)
    filtered = drop_zero_genes(combined)
    provenance.n_combined_genes = combined.counts.shape[0]
    provenance.n_filtered_genes = filtered.counts.shape[0]

    results = run_engine(filtered, tree, traits, config.pgls)
    provenance.n_bm_failures = int(results["bm_error"].notna().sum())
    provenance.n_lambda_failures = int(results["lambda_error"].notna().sum())

    selector = HitSelector(config.selection)
    hits = selector.select(results)
    display_order = config.display_order or default_display_order(samples)
    hit_expression = selector.hit_expression(filtered, hits, display_order)
    provenance.n_hits = len(hits)
    logger.info("Run complete: %d of %d tested genes are hits", len(hits), len(results))

    return PipelineResult(
        samples=samples,
        combined=combined,
        filtered=filtered,
        results=results,
        hits=hits,
        top_hits=selector.top(hits),
        hit_expression=hit_expression,
        provenance=provenance,
    )
