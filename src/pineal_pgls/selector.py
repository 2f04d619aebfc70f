"""
Hit selection and ranking for PGLS results.

A gene is a hit when both models fitted, both adjusted p-values are
below the FDR threshold, both absolute log2 fold changes exceed the
effect threshold, and the fitted lambda stays below an upper bound.
The lambda bound screens out genes whose trait association is better
explained by shared ancestry alone.
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from pineal_pgls.config import SelectionConfig
from pineal_pgls.model import FilteredMatrix

logger = logging.getLogger(__name__)


class HitSelector:
    """
    Filters and ranks the adjusted result table.

    Example:
        selector = HitSelector()
        hits = selector.select(results)
        heat = selector.hit_expression(filtered, hits, display_order)
    """

    def __init__(self, config: Optional[SelectionConfig] = None):
        self.config = config or SelectionConfig()

    def passes(self, table: pd.DataFrame) -> pd.Series:
        """Boolean mask of rows meeting every joint threshold."""
        cfg = self.config
        fitted = table["bm_pvalue"].notna() & table["lambda_pvalue"].notna()
        significant = (table["bm_padj"] < cfg.fdr_threshold) & (
            table["lambda_padj"] < cfg.fdr_threshold
        )
        large = (table["bm_log2fc"].abs() > cfg.log2fc_threshold) & (
            table["lambda_log2fc"].abs() > cfg.log2fc_threshold
        )
        weak_signal = table["lambda"] < cfg.max_lambda
        return fitted & significant & large & weak_signal

    def select(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Return hits ranked by ascending lambda-model p-value.

        Args:
            table: AdjustedResultTable from the engine

        Returns:
            Hit rows with a 1-based ``rank`` and a ``direction`` column
        """
        hits = table[self.passes(table)].copy()
        hits = hits.sort_values(
            ["lambda_pvalue", "lambda_padj", "gene"], kind="mergesort"
        ).reset_index(drop=True)
        hits["direction"] = np.where(hits["lambda_log2fc"] > 0, "up", "down")
        hits.insert(0, "rank", np.arange(1, len(hits) + 1))

        logger.info(
            "%d of %d genes pass joint thresholds (%d up, %d down)",
            len(hits),
            len(table),
            int((hits["direction"] == "up").sum()),
            int((hits["direction"] == "down").sum()),
        )
        return hits

    def top(self, hits: pd.DataFrame, n: Optional[int] = None) -> pd.DataFrame:
        """Return the first ``n`` ranked hits (config ``top_n`` by default)."""
        return hits.head(n or self.config.top_n)

    def hit_expression(
        self,
        filtered: FilteredMatrix,
        hits: pd.DataFrame,
        display_order: List[str],
    ) -> pd.DataFrame:
        """Filtered expression of the hit genes with columns in display order."""
        missing = [s for s in display_order if s not in filtered.counts.columns]
        if missing:
            raise ValueError(f"Display order names unknown samples: {', '.join(missing)}")
        genes = [g for g in hits["gene"] if g in filtered.counts.index]
        return filtered.counts.loc[genes, display_order]


def separate_by_direction(hits: pd.DataFrame) -> tuple:
    """Split hits into (higher in trait-positive, lower in trait-positive)."""
    return hits[hits["direction"] == "up"], hits[hits["direction"] == "down"]
