"""Value objects threaded between pipeline stages.

Every stage consumes one of these and produces a new one; none is
modified after construction. Matrices are genes (rows) x samples
(columns) ``DataFrame``s of non-negative abundances.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd


@dataclass(frozen=True)
class Sample:
    """One biological sample; one-to-one with a species in this design."""

    accession: str
    species: str
    organism: str  # Ensembl / g:Profiler organism code, e.g. "hsapiens"
    calcifies: bool
    abundance_path: Optional[Path] = None

    @property
    def sample_name(self) -> str:
        return f"{self.species}_{self.accession}"

    @property
    def trait(self) -> int:
        return 1 if self.calcifies else 0


@dataclass(frozen=True)
class GeneCountMatrix:
    """Gene-level abundances for one species.

    ``namespace`` records which identifier space the row index is in:
    ``"ensembl"`` for native gene ids, ``"symbol"`` once keyed by
    reference gene symbols.
    """

    species: str
    counts: pd.DataFrame
    namespace: str = "ensembl"

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def samples(self) -> List[str]:
        return list(self.counts.columns)

    def rekey(self, counts: pd.DataFrame, namespace: str) -> "GeneCountMatrix":
        """Return a new matrix for the same species with a different index."""
        return GeneCountMatrix(species=self.species, counts=counts, namespace=namespace)


@dataclass(frozen=True)
class OrthologMap:
    """Resolved source->reference pairs for one non-reference species.

    ``pairs`` has columns ``source`` (native gene id) and ``target``
    (reference gene id) after the conflict policy has been applied.
    """

    species: str
    pairs: pd.DataFrame
    backend: str
    conflict_policy: str
    n_raw_pairs: int = 0

    def as_dict(self) -> Dict[str, str]:
        return dict(zip(self.pairs["source"], self.pairs["target"]))


@dataclass(frozen=True)
class CombinedMatrix:
    """Union of all species' genes with explicit zeros for absent orthologs."""

    counts: pd.DataFrame
    reference_columns: tuple
    sample_species: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FilteredMatrix:
    """CombinedMatrix restricted to genes with a non-zero total."""

    counts: pd.DataFrame
    sample_species: Dict[str, str] = field(default_factory=dict)
    n_dropped: int = 0

    def by_species(self) -> pd.DataFrame:
        """Return the matrix with columns renamed from samples to species."""
        return self.counts.rename(columns=self.sample_species)


@dataclass
class PerGeneResult:
    """Outcome of fitting both regression models to one gene.

    Missing values (``NaN``) mark a model that failed to fit; they are
    never replaced by zeros.
    """

    gene_id: str
    bm_log2fc: float = math.nan
    bm_pvalue: float = math.nan
    lambda_log2fc: float = math.nan
    lambda_pvalue: float = math.nan
    lambda_value: float = math.nan
    lambda_loglik: float = math.nan
    bm_error: Optional[str] = None
    lambda_error: Optional[str] = None

    @property
    def bm_failed(self) -> bool:
        return self.bm_error is not None

    @property
    def lambda_failed(self) -> bool:
        return self.lambda_error is not None

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["gene"] = payload.pop("gene_id")
        payload["lambda"] = payload.pop("lambda_value")
        return payload


@dataclass
class RunProvenance:
    """Record of what a pipeline run consumed and produced."""

    timestamp: str
    reference_species: str
    samples: List[dict]
    config: dict
    ortholog_backends: Dict[str, str] = field(default_factory=dict)
    genes_per_species: Dict[str, int] = field(default_factory=dict)
    mapped_genes_per_species: Dict[str, int] = field(default_factory=dict)
    n_combined_genes: int = 0
    n_filtered_genes: int = 0
    n_bm_failures: int = 0
    n_lambda_failures: int = 0
    n_hits: int = 0

    @classmethod
    def create(
        cls,
        reference_species: str,
        samples: List[Sample],
        config: dict,
    ) -> "RunProvenance":
        """Create a provenance record with current timestamp."""
        return cls(
            timestamp=datetime.now().isoformat(),
            reference_species=reference_species,
            samples=[
                {
                    "accession": s.accession,
                    "species": s.species,
                    "organism": s.organism,
                    "calcifies": s.calcifies,
                    "sample_name": s.sample_name,
                }
                for s in samples
            ],
            config=config,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "reference_species": self.reference_species,
            "samples": self.samples,
            "config": self.config,
            "orthologs": {
                "backends": self.ortholog_backends,
                "mapped_genes": self.mapped_genes_per_species,
            },
            "gene_counts": {
                "per_species": self.genes_per_species,
                "combined": self.n_combined_genes,
                "filtered": self.n_filtered_genes,
                "hits": self.n_hits,
            },
            "fit_failures": {
                "brownian": self.n_bm_failures,
                "lambda": self.n_lambda_failures,
            },
        }
