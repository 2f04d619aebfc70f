"""
Quantification loader.

Reads per-sample transcript abundance tables (kallisto ``abundance.tsv``,
salmon ``quant.sf`` or a plain two-column table) and sums transcripts
into genes with the species' transcript -> gene map. Transcripts with no
mapping entry are discarded.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from pineal_pgls.annotation.tables import MappingTableCache
from pineal_pgls.config import QuantConfig
from pineal_pgls.errors import MissingAbundanceFileError, PipelineIntegrityError
from pineal_pgls.model import GeneCountMatrix, Sample

logger = logging.getLogger(__name__)

DEFAULT_FILENAMES = ("abundance.tsv", "quant.sf")

# (id column, counts column, tpm column) per tool
_KNOWN_LAYOUTS = {
    "kallisto": ("target_id", "est_counts", "tpm"),
    "salmon": ("Name", "NumReads", "TPM"),
}


def normalize_transcript_id(raw_id: str) -> str:
    """
    Reduce a transcript identifier to its unversioned accession.

    >>> normalize_transcript_id("ENST00000456328.2|ENSG00000290825.1|-")
    'ENST00000456328'
    """
    return str(raw_id).strip().split("|")[0].split(".")[0]


def resolve_abundance_path(sample: Sample, quant_dir: Optional[Path]) -> Optional[Path]:
    """Return the abundance file for a sample, or None if none exists."""
    if sample.abundance_path is not None:
        return sample.abundance_path if sample.abundance_path.exists() else None
    if quant_dir is None:
        return None
    for name in DEFAULT_FILENAMES:
        candidate = quant_dir / sample.accession / name
        if candidate.exists():
            return candidate
    return None


def read_abundance_table(path: Path, abundance: str = "counts") -> pd.Series:
    """Read one abundance table as a transcript -> value Series.

    Transcript ids are normalized and duplicates (e.g. PAR copies) summed.
    """
    df = pd.read_csv(path, sep="\t")

    id_col = value_col = None
    for tool, (ids, counts, tpm) in _KNOWN_LAYOUTS.items():
        if ids in df.columns:
            id_col = ids
            value_col = counts if abundance == "counts" else tpm
            logger.debug("Detected %s layout in %s", tool, path)
            break

    if id_col is None:
        if df.shape[1] < 2:
            raise PipelineIntegrityError(f"Abundance table {path} has fewer than 2 columns")
        id_col, value_col = df.columns[0], df.columns[1]
    elif value_col not in df.columns:
        raise PipelineIntegrityError(f"Abundance table {path} lacks column {value_col!r}")

    values = pd.to_numeric(df[value_col], errors="coerce").fillna(0.0)
    ids = df[id_col].map(normalize_transcript_id)
    return values.groupby(ids.values).sum()


def aggregate_to_genes(
    transcripts: pd.Series,
    tx2gene: pd.DataFrame,
) -> pd.Series:
    """Sum transcript abundances per gene; unmapped transcripts are dropped."""
    mapping = dict(zip(tx2gene["transcript_id"], tx2gene["gene_id"]))
    genes = transcripts.index.map(mapping)
    mapped = genes.notna()
    n_unmapped = int((~mapped).sum())
    if n_unmapped:
        logger.debug("Dropped %d transcripts without a gene mapping", n_unmapped)
    return transcripts[mapped].groupby(genes[mapped]).sum().sort_index()


def load_gene_counts(
    samples: List[Sample],
    tables: MappingTableCache,
    config: Optional[QuantConfig] = None,
) -> Dict[str, GeneCountMatrix]:
    """Build one GeneCountMatrix per species.

    Every declared sample must have an abundance table; the whole run is
    refused otherwise.

    Args:
        samples: Samples from the sample sheet
        tables: Source of transcript -> gene maps
        config: Loader settings

    Returns:
        Dict mapping species -> GeneCountMatrix (native gene ids)

    Raises:
        MissingAbundanceFileError: If any sample's table is missing.
    """
    config = config or QuantConfig()

    paths = {s.accession: resolve_abundance_path(s, config.quant_dir) for s in samples}
    missing = [acc for acc, p in paths.items() if p is None]
    if missing:
        raise MissingAbundanceFileError(
            f"Missing abundance file for sample(s): {', '.join(missing)}"
        )

    by_species: Dict[str, List[Sample]] = {}
    for sample in samples:
        by_species.setdefault(sample.species, []).append(sample)

    matrices: Dict[str, GeneCountMatrix] = {}
    for species, species_samples in by_species.items():
        organism = species_samples[0].organism
        tx2gene = tables.tx2gene(organism)

        columns = {}
        for sample in species_samples:
            transcripts = read_abundance_table(paths[sample.accession], config.abundance)
            columns[sample.sample_name] = aggregate_to_genes(transcripts, tx2gene)

        counts = pd.DataFrame(columns).fillna(0.0).sort_index()
        counts.index.name = "gene_id"
        if counts.empty:
            raise PipelineIntegrityError(
                f"No transcripts of {species} matched the {organism} transcript map"
            )

        matrices[species] = GeneCountMatrix(species=species, counts=counts)
        logger.info(
            "%s: %d genes x %d sample(s)", species, counts.shape[0], counts.shape[1]
        )

    return matrices
