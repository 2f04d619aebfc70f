"""
Phylogenetic differential-expression engine.

Every gene is fitted independently by ``fit_gene``, a pure function of
the gene's expression, the tree and the trait table. Genes can therefore
be spread across worker processes; results are collected by gene id and
the Benjamini-Hochberg correction runs once all genes are back.

A failed fit is recorded as missing values for that model and the loop
moves on. Misalignment between observation rows and tree tips is not a
fit failure and aborts the run.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from pineal_pgls.config import PGLSConfig
from pineal_pgls.errors import PGLSFitError, TipAlignmentError, TipMismatchError
from pineal_pgls.model import FilteredMatrix, PerGeneResult
from pineal_pgls.phylo.pgls import fit_brownian, fit_lambda
from pineal_pgls.phylo.tree import PhylogeneticTree

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "gene",
    "bm_log2fc",
    "bm_pvalue",
    "bm_padj",
    "lambda_log2fc",
    "lambda_pvalue",
    "lambda_padj",
    "lambda",
    "lambda_loglik",
    "bm_error",
    "lambda_error",
]

BATCH_SIZE = 250


def build_observation_table(
    expression: pd.Series,
    traits: pd.Series,
    tip_labels: Tuple[str, ...],
    pseudocount: float = 1.0,
) -> pd.DataFrame:
    """
    Assemble one gene's per-species observations in tree tip order.

    Args:
        expression: species -> raw abundance
        traits: species -> 0/1 trait value
        tip_labels: Tree tip order
        pseudocount: Added before the log2 transform

    Returns:
        DataFrame indexed by species with ``expression`` (log2) and
        ``trait`` columns
    """
    obs = pd.DataFrame(
        {
            "expression": np.log2(expression.astype(float) + pseudocount),
            "trait": traits.astype(float),
        }
    ).reindex(list(tip_labels))
    obs.index.name = "species"

    if obs.isna().any().any():
        missing = sorted(obs.index[obs.isna().any(axis=1)])
        raise TipMismatchError(
            f"No expression or trait value for tree tip(s): {', '.join(missing)}"
        )
    return obs


def check_alignment(obs: pd.DataFrame, tree: PhylogeneticTree) -> None:
    """Require observation rows to be exactly in tree tip order."""
    rows = tuple(obs.index)
    if rows != tree.tip_labels:
        raise TipAlignmentError(
            f"Observation rows {list(rows)} are not in tree tip order "
            f"{list(tree.tip_labels)}"
        )


def fit_observations(
    gene_id: str,
    obs: pd.DataFrame,
    tree: PhylogeneticTree,
    config: PGLSConfig,
) -> PerGeneResult:
    """Fit both models to an aligned observation table."""
    check_alignment(obs, tree)

    y = obs["expression"].to_numpy(dtype=float)
    trait = obs["trait"].to_numpy(dtype=float)
    result = PerGeneResult(gene_id=gene_id)

    try:
        bm = fit_brownian(y, trait, tree.covariance)
        result.bm_log2fc = bm.coefficient
        result.bm_pvalue = bm.pvalue
    except (PGLSFitError, np.linalg.LinAlgError, ValueError) as exc:
        logger.debug("%s: Brownian fit failed: %s", gene_id, exc)
        result.bm_error = str(exc)

    try:
        lam = fit_lambda(
            y,
            trait,
            tree.covariance,
            bounds=config.lambda_bounds,
            max_iterations=config.max_iterations,
        )
        result.lambda_log2fc = lam.coefficient
        result.lambda_pvalue = lam.pvalue
        result.lambda_value = lam.lam
        result.lambda_loglik = lam.loglik
    except (PGLSFitError, np.linalg.LinAlgError, ValueError) as exc:
        logger.debug("%s: lambda fit failed: %s", gene_id, exc)
        result.lambda_error = str(exc)

    return result


def fit_gene(
    gene_id: str,
    expression: pd.Series,
    tree: PhylogeneticTree,
    traits: pd.Series,
    config: Optional[PGLSConfig] = None,
) -> PerGeneResult:
    """Fit one gene: (gene id, expression, tree, traits) -> PerGeneResult."""
    config = config or PGLSConfig()
    obs = build_observation_table(expression, traits, tree.tip_labels, config.pseudocount)
    return fit_observations(gene_id, obs, tree, config)


def _fit_batch(
    batch: List[Tuple[str, Dict[str, float]]],
    tree: PhylogeneticTree,
    traits: Dict[str, int],
    config: PGLSConfig,
) -> List[PerGeneResult]:
    trait_series = pd.Series(traits)
    return [
        fit_gene(gene_id, pd.Series(values), tree, trait_series, config)
        for gene_id, values in batch
    ]


def benjamini_hochberg(pvalues: pd.Series) -> pd.Series:
    """
    BH-adjust p-values, leaving missing entries missing.

    Missing p-values (failed fits) are excluded from the correction and
    do not count toward the number of tests.
    """
    adjusted = pd.Series(np.nan, index=pvalues.index, dtype=float)
    mask = pvalues.notna()
    if mask.any():
        _, padj, _, _ = multipletests(pvalues[mask].to_numpy(dtype=float), method="fdr_bh")
        adjusted[mask] = padj
    return adjusted


def results_table(results: List[PerGeneResult], gene_order: Optional[List[str]] = None) -> pd.DataFrame:
    """Collect per-gene results into a table and add BH-adjusted p-values."""
    df = pd.DataFrame([r.to_dict() for r in results])
    if df.empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    if gene_order is not None:
        df = df.set_index("gene").reindex(pd.Index(gene_order, name="gene")).reset_index()

    df["bm_padj"] = benjamini_hochberg(df["bm_pvalue"])
    df["lambda_padj"] = benjamini_hochberg(df["lambda_pvalue"])
    return df[RESULT_COLUMNS]


def run_engine(
    filtered: FilteredMatrix,
    tree: PhylogeneticTree,
    traits: pd.Series,
    config: Optional[PGLSConfig] = None,
) -> pd.DataFrame:
    """
    Fit every gene of the filtered matrix and correct for multiple testing.

    Args:
        filtered: Genes x samples matrix with non-zero rows
        tree: Species tree
        traits: species -> 0/1 trait
        config: Engine settings; ``workers > 1`` uses a process pool

    Returns:
        AdjustedResultTable with one row per gene, in matrix order
    """
    config = config or PGLSConfig()
    by_species = filtered.by_species()
    tree.validate_tips(by_species.columns)
    tree.validate_tips(traits.index)

    genes = [str(g) for g in by_species.index]
    records = by_species.to_dict(orient="index")
    items = [(str(gene), records[gene]) for gene in by_species.index]
    trait_dict = {str(k): int(v) for k, v in traits.items()}

    logger.info("Fitting %d genes with %d worker(s)", len(items), config.workers)
    collected: Dict[str, PerGeneResult] = {}

    if config.workers <= 1:
        for result in _fit_batch(items, tree, trait_dict, config):
            collected[result.gene_id] = result
    else:
        batches = [items[i:i + BATCH_SIZE] for i in range(0, len(items), BATCH_SIZE)]
        with ProcessPoolExecutor(max_workers=config.workers) as executor:
            futures = [
                executor.submit(_fit_batch, batch, tree, trait_dict, config)
                for batch in batches
            ]
            for future in as_completed(futures):
                for result in future.result():
                    collected[result.gene_id] = result

    results = [collected[g] for g in genes]
    n_bm = sum(r.bm_failed for r in results)
    n_lambda = sum(r.lambda_failed for r in results)
    logger.info(
        "Fitted %d genes; %d Brownian and %d lambda fits failed",
        len(results),
        n_bm,
        n_lambda,
    )
    return results_table(results, gene_order=genes)
