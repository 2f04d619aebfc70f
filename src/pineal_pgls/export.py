"""Writers for the artifacts consumed by downstream reporting."""

import json
import logging
from pathlib import Path
from typing import Dict

import pandas as pd

from pineal_pgls.model import RunProvenance

logger = logging.getLogger(__name__)

ARTIFACT_NAMES = {
    "combined": "combined_matrix.csv",
    "filtered": "filtered_matrix.csv",
    "results": "pgls_results.csv",
    "hits": "hits.csv",
    "top_hits": "top_hits.csv",
    "hit_expression": "hit_expression.csv",
    "provenance": "provenance.json",
}


def write_table(df: pd.DataFrame, path: Path, index: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    logger.info("Wrote %s (%d rows)", path, len(df))
    return path


def write_provenance(provenance: RunProvenance, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(provenance.to_dict(), fh, indent=2, default=str)
    return path


def write_outputs(
    output_dir: Path,
    combined: pd.DataFrame,
    filtered: pd.DataFrame,
    results: pd.DataFrame,
    hits: pd.DataFrame,
    top_hits: pd.DataFrame,
    hit_expression: pd.DataFrame,
    provenance: RunProvenance,
) -> Dict[str, Path]:
    """Write every artifact of a run and return their paths by name."""
    output_dir = Path(output_dir)
    paths = {name: output_dir / filename for name, filename in ARTIFACT_NAMES.items()}

    write_table(combined, paths["combined"])
    write_table(filtered, paths["filtered"])
    write_table(results, paths["results"], index=False)
    write_table(hits, paths["hits"], index=False)
    write_table(top_hits, paths["top_hits"], index=False)
    write_table(hit_expression, paths["hit_expression"])
    write_provenance(provenance, paths["provenance"])
    return paths
