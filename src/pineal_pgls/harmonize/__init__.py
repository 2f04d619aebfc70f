"""Harmonization of per-species quantifications into one gene matrix.

Stages run in order: quantification loading, reference symbol
normalization, ortholog mapping, and merging.
"""

from pineal_pgls.harmonize.merger import drop_zero_genes, merge_matrices
from pineal_pgls.harmonize.orthologs import (
    BiomartHomologBackend,
    GProfilerOrthBackend,
    OrthologBackend,
    OrthologFetchResult,
    OrthologResolver,
    apply_conflict_policy,
    map_to_reference,
)
from pineal_pgls.harmonize.quant_loader import load_gene_counts, read_abundance_table
from pineal_pgls.harmonize.symbols import build_symbol_map, normalize_reference

__all__ = [
    "BiomartHomologBackend",
    "GProfilerOrthBackend",
    "OrthologBackend",
    "OrthologFetchResult",
    "OrthologResolver",
    "apply_conflict_policy",
    "build_symbol_map",
    "drop_zero_genes",
    "load_gene_counts",
    "map_to_reference",
    "merge_matrices",
    "normalize_reference",
    "read_abundance_table",
]
