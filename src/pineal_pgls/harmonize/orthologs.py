"""
Ortholog mapping of non-reference species onto reference gene symbols.

Two interchangeable backends resolve orthology:

- ``GProfilerOrthBackend``: g:Profiler g:Orth (primary)
- ``BiomartHomologBackend``: Ensembl BioMart homology attributes (fallback)

Backends report transport failures in their fetch result instead of
raising. ``OrthologResolver`` asks the primary first and switches to the
fallback only when the primary reports an error; an empty but successful
answer is accepted as is.

Example:
    resolver = OrthologResolver()
    ortholog_map = resolver.resolve(mouse_matrix, "mmusculus", "hsapiens", symbol_map)
    mapped = map_to_reference(mouse_matrix, ortholog_map)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import pandas as pd
import requests

from pineal_pgls.annotation.biomart import BiomartClient, BiomartQueryError
from pineal_pgls.annotation.http_utils import RetryPolicy, call_with_retries
from pineal_pgls.config import CONFLICT_POLICIES
from pineal_pgls.errors import ConfigValidationError, OrthologResolutionError
from pineal_pgls.model import GeneCountMatrix, OrthologMap

logger = logging.getLogger(__name__)

_NO_ORTHOLOG = {"", "N/A", "None", "nan"}


@dataclass
class OrthologFetchResult:
    """Raw source -> reference gene pairs from one backend, or its error."""

    backend: str
    pairs: Optional[pd.DataFrame] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OrthologBackend(Protocol):
    """Protocol for ortholog resolution backends."""

    name: str

    def fetch(
        self,
        gene_ids: List[str],
        organism: str,
        reference_organism: str,
    ) -> OrthologFetchResult:
        """
        Look up reference-organism orthologs for a list of genes.

        Args:
            gene_ids: Native Ensembl gene ids of ``organism``
            organism: Source organism code (e.g. ``mmusculus``)
            reference_organism: Target organism code (e.g. ``hsapiens``)

        Returns:
            Fetch result with a ``source``/``target`` pairs table on success
        """
        ...


def _pairs_frame(rows: List[tuple]) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=["source", "target"], dtype=str)
    return df.drop_duplicates().reset_index(drop=True)


class GProfilerOrthBackend:
    """
    Ortholog lookup through the g:Profiler g:Orth API.

    Uses the gprofiler-official package; queries are sent in batches and
    each batch is retried under ``policy`` before the backend reports an
    error.
    """

    name = "gprofiler"

    # gprofiler-official signals a non-200 answer with AssertionError
    _RETRY_ON = (requests.RequestException, AssertionError)

    def __init__(self, batch_size: int = 5000, policy: RetryPolicy = RetryPolicy()):
        self.batch_size = batch_size
        self.policy = policy
        self._gp = None

    def _get_client(self):
        """Lazy initialization of g:Profiler client."""
        if self._gp is None:
            try:
                from gprofiler import GProfiler

                self._gp = GProfiler(return_dataframe=False)
            except ImportError as e:
                raise ImportError(
                    "gprofiler-official package required. "
                    "Install with: pip install gprofiler-official"
                ) from e
        return self._gp

    def fetch(
        self,
        gene_ids: List[str],
        organism: str,
        reference_organism: str,
    ) -> OrthologFetchResult:
        gp = self._get_client()
        rows = []
        try:
            for start in range(0, len(gene_ids), self.batch_size):
                batch = gene_ids[start:start + self.batch_size]
                result = call_with_retries(
                    gp.orth,
                    organism=organism,
                    query=batch,
                    target=reference_organism,
                    policy=self.policy,
                    retry_on=self._RETRY_ON,
                    description=f"g:Orth {organism} batch {start // self.batch_size + 1}",
                )
                for r in result or []:
                    target = str(r.get("ortholog_ensg") or "").strip()
                    if target in _NO_ORTHOLOG:
                        continue
                    rows.append((str(r["incoming"]).strip(), target))
        except (requests.RequestException, AssertionError, KeyError, ValueError) as exc:
            return OrthologFetchResult(backend=self.name, error=f"{type(exc).__name__}: {exc}")

        return OrthologFetchResult(backend=self.name, pairs=_pairs_frame(rows))


class BiomartHomologBackend:
    """Ortholog lookup from Ensembl BioMart homology attributes."""

    name = "biomart"

    def __init__(self, client: Optional[BiomartClient] = None):
        self.client = client or BiomartClient()

    def fetch(
        self,
        gene_ids: List[str],
        organism: str,
        reference_organism: str,
    ) -> OrthologFetchResult:
        try:
            homologs = self.client.homologs(organism, reference_organism)
        except (requests.RequestException, BiomartQueryError) as exc:
            return OrthologFetchResult(backend=self.name, error=f"{type(exc).__name__}: {exc}")

        wanted = set(gene_ids)
        homologs = homologs[homologs["source"].isin(wanted)]
        rows = list(zip(homologs["source"], homologs["target"]))
        return OrthologFetchResult(backend=self.name, pairs=_pairs_frame(rows))


def apply_conflict_policy(pairs: pd.DataFrame, policy: str) -> pd.DataFrame:
    """
    Resolve genes that take part in more than one orthology pair.

    - ``drop_both_species``: keep only strict one-to-one pairs
    - ``drop_input_species``: drop source genes with several targets
    - ``drop_output_species``: drop targets reached from several sources

    Args:
        pairs: DataFrame with ``source`` and ``target`` columns
        policy: One of the policies above

    Returns:
        Filtered pairs
    """
    if policy not in CONFLICT_POLICIES:
        raise ConfigValidationError(f"Unknown conflict policy {policy!r}")

    pairs = pairs.drop_duplicates()
    multi_source = pairs["source"].duplicated(keep=False)
    multi_target = pairs["target"].duplicated(keep=False)

    if policy == "drop_both_species":
        keep = ~multi_source & ~multi_target
    elif policy == "drop_input_species":
        keep = ~multi_source
    else:
        keep = ~multi_target
    return pairs[keep].reset_index(drop=True)


class OrthologResolver:
    """
    Resolves non-reference genes to reference gene symbols.

    Tries the primary backend, and the fallback only if the primary
    reports an error. Raises if both report errors, since every declared
    species must contribute to the merge.
    """

    def __init__(
        self,
        primary: Optional[OrthologBackend] = None,
        fallback: Optional[OrthologBackend] = None,
        conflict_policy: str = "drop_both_species",
    ):
        if conflict_policy not in CONFLICT_POLICIES:
            raise ConfigValidationError(f"Unknown conflict policy {conflict_policy!r}")
        self.primary = primary or GProfilerOrthBackend()
        self.fallback = fallback or BiomartHomologBackend()
        self.conflict_policy = conflict_policy

    def fetch_pairs(
        self,
        species: str,
        gene_ids: List[str],
        organism: str,
        reference_organism: str,
    ) -> OrthologFetchResult:
        result = self.primary.fetch(gene_ids, organism, reference_organism)
        if result.ok:
            return result

        logger.warning(
            "%s: %s ortholog lookup failed (%s); using %s",
            species,
            self.primary.name,
            result.error,
            self.fallback.name,
        )
        fallback = self.fallback.fetch(gene_ids, organism, reference_organism)
        if not fallback.ok:
            raise OrthologResolutionError(
                f"Ortholog resolution failed for {species}: "
                f"{self.primary.name}: {result.error}; "
                f"{self.fallback.name}: {fallback.error}"
            )
        return fallback

    def resolve(
        self,
        matrix: GeneCountMatrix,
        organism: str,
        reference_organism: str,
        symbol_map: pd.Series,
    ) -> OrthologMap:
        """
        Build the ortholog map for one species.

        Args:
            matrix: Species matrix keyed by native gene ids
            organism: Organism code of the species
            reference_organism: Organism code of the reference species
            symbol_map: Injective reference gene id -> symbol Series

        Returns:
            OrthologMap whose targets are reference symbols
        """
        gene_ids = [str(g) for g in matrix.counts.index]
        result = self.fetch_pairs(matrix.species, gene_ids, organism, reference_organism)

        raw = result.pairs
        pairs = apply_conflict_policy(raw, self.conflict_policy)
        pairs = pairs[pairs["target"].isin(symbol_map.index)]
        pairs = pairs.assign(target=symbol_map.reindex(pairs["target"]).values)
        pairs = pairs.reset_index(drop=True)

        logger.info(
            "%s: %d raw ortholog pairs, %d kept under %s via %s",
            matrix.species,
            len(raw),
            len(pairs),
            self.conflict_policy,
            result.backend,
        )
        return OrthologMap(
            species=matrix.species,
            pairs=pairs,
            backend=result.backend,
            conflict_policy=self.conflict_policy,
            n_raw_pairs=len(raw),
        )

    def resolve_all(
        self,
        matrices: Dict[str, GeneCountMatrix],
        organisms: Dict[str, str],
        reference_organism: str,
        symbol_map: pd.Series,
        max_workers: int = 1,
    ) -> Dict[str, OrthologMap]:
        """Resolve several species; queries run concurrently if asked."""
        if max_workers <= 1:
            return {
                species: self.resolve(m, organisms[species], reference_organism, symbol_map)
                for species, m in matrices.items()
            }

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                species: executor.submit(
                    self.resolve, m, organisms[species], reference_organism, symbol_map
                )
                for species, m in matrices.items()
            }
            return {species: f.result() for species, f in futures.items()}


def map_to_reference(matrix: GeneCountMatrix, ortholog_map: OrthologMap) -> GeneCountMatrix:
    """Re-key a species matrix by reference symbol.

    Genes without a pair are absent from the result. Several sources on
    one target (possible under ``drop_input_species``) are summed.
    """
    pairs = ortholog_map.pairs
    pairs = pairs[pairs["source"].isin(matrix.counts.index)]

    counts = matrix.counts.loc[pairs["source"].values].copy()
    counts.index = pd.Index(pairs["target"].values, name="gene")
    counts = counts.groupby(level=0).sum().sort_index()
    counts.index.name = "gene"
    return matrix.rekey(counts, namespace="symbol")
