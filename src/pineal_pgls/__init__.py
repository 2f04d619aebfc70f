"""Cross-species expression harmonization and phylogenetic regression.

Per-species transcript quantifications are mapped onto reference gene
symbols, merged into one matrix, and screened gene by gene for
association with a binary trait under Brownian and Pagel's lambda
PGLS models.
"""

from pineal_pgls.config import PipelineConfig
from pineal_pgls.pipeline import PipelineResult, run_pipeline

__version__ = "0.1.0"

__all__ = ["PipelineConfig", "PipelineResult", "run_pipeline", "__version__"]
