"""Sample sheet and trait table loading.

The sample sheet declares every sample the run must have. Expected
columns::

    accession  species  organism  calcifies  [abundance_path]
    SRR0001    Human    hsapiens  yes        quant/SRR0001/abundance.tsv

One sample per species; exactly one row must belong to the reference
species.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from pineal_pgls.errors import SampleSheetError
from pineal_pgls.model import Sample

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("accession", "species", "organism", "calcifies")

_TRUE_LABELS = {"yes", "y", "true", "t", "1", "calcified", "calcifies"}
_FALSE_LABELS = {"no", "n", "false", "f", "0", "non-calcified", "noncalcified"}


def _read_table(path: Path) -> pd.DataFrame:
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt", ".tab") else ","
    return pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)


def parse_trait_label(value) -> bool:
    """Parse a binary trait label.

    >>> parse_trait_label("Yes")
    True
    >>> parse_trait_label("0")
    False
    """
    key = str(value).strip().lower()
    if key in _TRUE_LABELS:
        return True
    if key in _FALSE_LABELS:
        return False
    raise SampleSheetError(f"Unrecognized trait label: {value!r}")


def load_sample_sheet(
    path: Union[str, Path],
    reference_species: str,
) -> List[Sample]:
    """Load and validate the sample sheet.

    Args:
        path: CSV or TSV sample sheet
        reference_species: Species whose genes define the merge namespace

    Returns:
        Samples in sheet order

    Raises:
        SampleSheetError: On missing columns, duplicate accessions or
            species, bad trait labels, or a missing reference row.
    """
    path = Path(path)
    if not path.exists():
        raise SampleSheetError(f"Sample sheet not found: {path}")

    df = _read_table(path)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise SampleSheetError(
            f"Sample sheet {path} is missing column(s): {', '.join(missing)}"
        )

    samples = []
    for _, row in df.iterrows():
        accession = row["accession"].strip()
        species = row["species"].strip()
        if not accession or not species:
            raise SampleSheetError(f"Blank accession or species in {path}")
        abundance = (row.get("abundance_path") or "").strip()
        abundance_path = None
        if abundance:
            abundance_path = Path(abundance)
            if not abundance_path.is_absolute():
                abundance_path = path.parent / abundance_path
        samples.append(
            Sample(
                accession=accession,
                species=species,
                organism=row["organism"].strip().lower(),
                calcifies=parse_trait_label(row["calcifies"]),
                abundance_path=abundance_path,
            )
        )

    validate_samples(samples, reference_species)
    logger.info(
        "Loaded %d samples (%d trait-positive) from %s",
        len(samples),
        sum(s.calcifies for s in samples),
        path,
    )
    return samples


def validate_samples(samples: List[Sample], reference_species: str) -> None:
    """Check the one-sample-per-species design invariants."""
    if not samples:
        raise SampleSheetError("Sample sheet declares no samples")

    accessions = [s.accession for s in samples]
    dupes = sorted({a for a in accessions if accessions.count(a) > 1})
    if dupes:
        raise SampleSheetError(f"Duplicate accessions: {', '.join(dupes)}")

    species = [s.species for s in samples]
    dupes = sorted({s for s in species if species.count(s) > 1})
    if dupes:
        raise SampleSheetError(
            f"More than one sample for species: {', '.join(dupes)}"
        )

    if reference_species not in species:
        raise SampleSheetError(
            f"Reference species {reference_species!r} has no sample"
        )

    labels = {s.calcifies for s in samples}
    if len(labels) < 2:
        raise SampleSheetError(
            "All samples share one trait label; the trait cannot be tested"
        )


def trait_table(
    samples: List[Sample],
    override_path: Optional[Union[str, Path]] = None,
) -> pd.Series:
    """Return the species -> 0/1 trait series.

    The sample sheet labels are used unless ``override_path`` points to a
    two-column (species, trait) table, which then must cover every species.
    """
    traits: Dict[str, int] = {s.species: s.trait for s in samples}

    if override_path is not None:
        df = _read_table(Path(override_path))
        if df.shape[1] < 2:
            raise SampleSheetError(
                f"Trait table {override_path} needs species and trait columns"
            )
        override = {
            str(sp).strip(): int(parse_trait_label(val))
            for sp, val in zip(df.iloc[:, 0], df.iloc[:, 1])
        }
        missing = sorted(set(traits) - set(override))
        if missing:
            raise SampleSheetError(
                f"Trait table {override_path} lacks species: {', '.join(missing)}"
            )
        traits = {sp: override[sp] for sp in traits}

    return pd.Series(traits, name="calcifies", dtype=int)


def default_display_order(samples: List[Sample]) -> List[str]:
    """Trait-positive sample names first, then trait-negative, sheet order."""
    positive = [s.sample_name for s in samples if s.calcifies]
    negative = [s.sample_name for s in samples if not s.calcifies]
    return positive + negative
