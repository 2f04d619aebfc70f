"""
Matrix merger.

Unions the symbol-keyed matrices of all species into one genes x samples
matrix. A gene missing from a species is an explicit zero in that
species' columns. Genes that are zero everywhere are removed afterwards.
"""

import logging
from typing import Dict, List

import pandas as pd

from pineal_pgls.errors import EmptyMergeError, PipelineIntegrityError
from pineal_pgls.model import CombinedMatrix, FilteredMatrix, GeneCountMatrix

logger = logging.getLogger(__name__)


def merge_matrices(
    matrices: Dict[str, GeneCountMatrix],
    reference_species: str,
) -> CombinedMatrix:
    """
    Combine per-species matrices over the union of their genes.

    Args:
        matrices: species -> matrix, all keyed by reference symbols
        reference_species: Species whose columns must carry signal

    Returns:
        CombinedMatrix with sorted gene rows and samples side by side

    Raises:
        EmptyMergeError: If the reference columns are entirely zero.
    """
    if reference_species not in matrices:
        raise PipelineIntegrityError(f"No matrix for reference species {reference_species!r}")

    for species, matrix in matrices.items():
        if matrix.namespace != "symbol":
            raise PipelineIntegrityError(
                f"{species} matrix is keyed by {matrix.namespace!r}, not reference symbols"
            )
        if matrix.counts.index.duplicated().any():
            raise PipelineIntegrityError(f"{species} matrix has duplicate gene keys")

    union = set()
    for matrix in matrices.values():
        union.update(matrix.counts.index)
    genes = sorted(union)

    frames: List[pd.DataFrame] = []
    sample_species: Dict[str, str] = {}
    for species, matrix in matrices.items():
        frames.append(matrix.counts.reindex(genes, fill_value=0.0))
        for sample in matrix.samples:
            if sample in sample_species:
                raise PipelineIntegrityError(f"Sample {sample!r} appears in more than one species")
            sample_species[sample] = species

    combined = pd.concat(frames, axis=1).astype(float)
    combined.index.name = "gene"

    reference_columns = tuple(matrices[reference_species].samples)
    if not (combined[list(reference_columns)].sum(axis=0) > 0).any():
        raise EmptyMergeError(
            f"Reference column(s) for {reference_species} are entirely zero "
            "after merging; symbol mapping failed"
        )

    logger.info(
        "Combined matrix: %d genes x %d samples", combined.shape[0], combined.shape[1]
    )
    return CombinedMatrix(
        counts=combined,
        reference_columns=reference_columns,
        sample_species=sample_species,
    )


def drop_zero_genes(combined: CombinedMatrix) -> FilteredMatrix:
    """Remove genes whose abundance sums to exactly zero across samples."""
    totals = combined.counts.sum(axis=1)
    keep = totals != 0
    filtered = combined.counts[keep].copy()
    n_dropped = int((~keep).sum())
    logger.info("Dropped %d all-zero genes; %d remain", n_dropped, filtered.shape[0])
    return FilteredMatrix(
        counts=filtered,
        sample_species=dict(combined.sample_species),
        n_dropped=n_dropped,
    )
