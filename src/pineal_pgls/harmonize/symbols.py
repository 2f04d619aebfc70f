"""
Symbol normalizer.

Re-keys the reference species' gene matrix from Ensembl gene ids to gene
symbols, which then serve as the merge key for every species. The lookup
is made injective before use: blank symbols are removed, and any gene id
or symbol that occurs more than once is dropped entirely.
"""

import logging

import pandas as pd

from pineal_pgls.model import GeneCountMatrix

logger = logging.getLogger(__name__)


def build_symbol_map(table: pd.DataFrame) -> pd.Series:
    """Return an injective gene id -> symbol Series.

    Args:
        table: DataFrame with ``gene_id`` and ``symbol`` columns

    Returns:
        Series indexed by gene id; both index and values are unique and
        non-blank.
    """
    df = table[["gene_id", "symbol"]].astype(str)
    df = df.assign(
        gene_id=df["gene_id"].str.strip(),
        symbol=df["symbol"].str.strip(),
    )
    df = df[(df["gene_id"] != "") & (df["symbol"] != "") & (df["symbol"].str.lower() != "nan")]
    df = df.drop_duplicates()

    dup_ids = df["gene_id"].duplicated(keep=False)
    dup_symbols = df["symbol"].duplicated(keep=False)
    injective = df[~dup_ids & ~dup_symbols]

    logger.info(
        "Symbol map: %d unique pairs (%d ids and %d symbols with conflicts dropped)",
        len(injective),
        df.loc[dup_ids, "gene_id"].nunique(),
        df.loc[dup_symbols, "symbol"].nunique(),
    )
    return pd.Series(
        injective["symbol"].values, index=injective["gene_id"].values, name="symbol"
    )


def normalize_reference(
    matrix: GeneCountMatrix,
    symbol_map: pd.Series,
) -> GeneCountMatrix:
    """Re-key the reference matrix by symbol, dropping rows with no symbol."""
    counts = matrix.counts
    keep = counts.index.isin(symbol_map.index)
    renamed = counts[keep].copy()
    renamed.index = symbol_map.reindex(renamed.index).values
    renamed.index.name = "gene"
    renamed = renamed.sort_index()

    logger.info(
        "%s: %d of %d genes carry a symbol",
        matrix.species,
        renamed.shape[0],
        counts.shape[0],
    )
    return matrix.rekey(renamed, namespace="symbol")
