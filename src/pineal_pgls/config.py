"""Configuration for the harmonization and PGLS pipeline.

Thresholds and policies live in dataclasses with validated defaults.
Paths and service endpoints can be overridden from the environment
(optionally via a ``.env`` file in the working directory).

Usage::

    from pineal_pgls.config import PipelineConfig

    config = PipelineConfig.from_env(reference_species="Human")
    config.selection.max_lambda  # 0.7
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv

from pineal_pgls.errors import ConfigValidationError

DEFAULT_CACHE_DIR = Path.home() / ".pineal_pgls"
DEFAULT_BIOMART_URL = "https://www.ensembl.org/biomart/martservice"

# Cached mapping tables older than this are refreshed when online
CACHE_MAX_AGE_DAYS = 90

ConflictPolicy = Literal[
    "drop_both_species",
    "drop_input_species",
    "drop_output_species",
]
CONFLICT_POLICIES = ("drop_both_species", "drop_input_species", "drop_output_species")

AbundanceColumn = Literal["counts", "tpm"]


@dataclass
class QuantConfig:
    """Settings for reading abundance tables and aggregating to genes.

    Attributes:
        quant_dir: Directory holding ``<accession>/abundance.tsv`` (kallisto)
            or ``<accession>/quant.sf`` (salmon) when the sample sheet gives
            no explicit path.
        abundance: Quantity to aggregate: estimated ``counts`` or ``tpm``.
    """

    quant_dir: Optional[Path] = None
    abundance: AbundanceColumn = "counts"

    def __post_init__(self):
        if self.abundance not in ("counts", "tpm"):
            raise ConfigValidationError(
                f"abundance must be 'counts' or 'tpm', got {self.abundance!r}"
            )
        if self.quant_dir is not None:
            self.quant_dir = Path(self.quant_dir)


@dataclass
class OrthologConfig:
    """Settings for mapping non-reference genes onto the reference.

    ``conflict_policy`` decides what happens to genes that take part in
    more than one orthology pair. The default keeps strict one-to-one
    pairs only and discards real duplications.
    """

    conflict_policy: ConflictPolicy = "drop_both_species"
    batch_size: int = 5000
    symbol_attribute: str = "hgnc_symbol"
    # concurrent per-species ortholog queries
    max_workers: int = 4

    def __post_init__(self):
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ConfigValidationError(
                f"Unknown conflict policy {self.conflict_policy!r}; "
                f"expected one of {', '.join(CONFLICT_POLICIES)}"
            )
        if self.batch_size < 1:
            raise ConfigValidationError("batch_size must be positive")
        if self.max_workers < 1:
            raise ConfigValidationError("max_workers must be at least 1")


@dataclass
class PGLSConfig:
    """Settings for the per-gene phylogenetic regressions."""

    pseudocount: float = 1.0
    lambda_bounds: tuple = (0.0, 1.0)
    max_iterations: int = 500
    workers: int = 1

    def __post_init__(self):
        low, high = self.lambda_bounds
        if not 0.0 <= low < high <= 1.0:
            raise ConfigValidationError(
                f"lambda_bounds must satisfy 0 <= low < high <= 1, got {self.lambda_bounds}"
            )
        if self.pseudocount <= 0:
            raise ConfigValidationError("pseudocount must be positive")
        if self.max_iterations < 1:
            raise ConfigValidationError("max_iterations must be positive")
        if self.workers < 1:
            raise ConfigValidationError("workers must be at least 1")
        self.lambda_bounds = (float(low), float(high))


@dataclass
class SelectionConfig:
    """Joint thresholds a gene must pass under both models to be a hit."""

    fdr_threshold: float = 0.05
    log2fc_threshold: float = 1.0
    max_lambda: float = 0.7
    top_n: int = 50

    def __post_init__(self):
        if not 0.0 < self.fdr_threshold <= 1.0:
            raise ConfigValidationError("fdr_threshold must be in (0, 1]")
        if self.log2fc_threshold < 0:
            raise ConfigValidationError("log2fc_threshold must be non-negative")
        if not 0.0 <= self.max_lambda <= 1.0:
            raise ConfigValidationError("max_lambda must be in [0, 1]")
        if self.top_n < 1:
            raise ConfigValidationError("top_n must be positive")


@dataclass
class PipelineConfig:
    """Top-level configuration for a pipeline run."""

    reference_species: str = "Human"
    cache_dir: Path = field(default_factory=lambda: DEFAULT_CACHE_DIR)
    biomart_url: str = DEFAULT_BIOMART_URL
    offline: bool = False
    display_order: Optional[List[str]] = None
    # retries for BioMart and g:Orth calls
    max_retries: int = 3
    retry_backoff: float = 1.0

    quant: QuantConfig = field(default_factory=QuantConfig)
    orthologs: OrthologConfig = field(default_factory=OrthologConfig)
    pgls: PGLSConfig = field(default_factory=PGLSConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)

    def __post_init__(self):
        if not self.reference_species:
            raise ConfigValidationError("reference_species must not be empty")
        if self.max_retries < 0:
            raise ConfigValidationError("max_retries must be non-negative")
        if self.retry_backoff < 0:
            raise ConfigValidationError("retry_backoff must be non-negative")
        self.cache_dir = Path(self.cache_dir)

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build a config from ``PINEAL_PGLS_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        load_dotenv()

        values = {}
        cache_dir = os.environ.get("PINEAL_PGLS_CACHE_DIR")
        if cache_dir:
            values["cache_dir"] = Path(cache_dir)
        biomart_url = os.environ.get("PINEAL_PGLS_BIOMART_URL")
        if biomart_url:
            values["biomart_url"] = biomart_url
        offline = os.environ.get("PINEAL_PGLS_OFFLINE", "")
        if offline:
            values["offline"] = offline.strip().lower() in ("1", "true", "yes")

        workers = os.environ.get("PINEAL_PGLS_WORKERS")
        if workers and "pgls" not in overrides:
            try:
                values["pgls"] = PGLSConfig(workers=int(workers))
            except ValueError as exc:
                raise ConfigValidationError(
                    f"PINEAL_PGLS_WORKERS must be an integer, got {workers!r}"
                ) from exc

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        payload = asdict(self)
        payload["cache_dir"] = str(self.cache_dir)
        quant_dir = payload["quant"]["quant_dir"]
        payload["quant"]["quant_dir"] = str(quant_dir) if quant_dir else None
        payload["pgls"]["lambda_bounds"] = list(self.pgls.lambda_bounds)
        return payload
