"""Shared synthetic inputs: six species, a dated tree, and a tiny genome."""

from pathlib import Path

import pandas as pd
import pytest

from pineal_pgls.harmonize.orthologs import OrthologFetchResult
from pineal_pgls.model import Sample

# Ultrametric, every tip at depth 0.8
NEWICK = (
    "(((Human:0.4,Rat:0.4):0.2,(Goat:0.3,Mouse:0.3):0.3):0.2,"
    "(Chicken:0.6,Zebrafish:0.6):0.2);"
)

SPECIES = [
    # species, organism, calcifies
    ("Human", "hsapiens", True),
    ("Rat", "rnorvegicus", True),
    ("Mouse", "mmusculus", False),
    ("Zebrafish", "drerio", False),
    ("Chicken", "ggallus", False),
    ("Goat", "chircus", True),
]

POSITIVE = {sp for sp, _, calcifies in SPECIES if calcifies}


def accession(species: str) -> str:
    return f"SRR_{species.upper()}"


def gene_id(species: str, gene: str) -> str:
    """Native gene id of ``gene`` in ``species``; Human ids map to symbols."""
    return f"ENS{species[:3].upper()}G_{gene}"


def transcript_id(species: str, gene: str) -> str:
    return f"ENS{species[:3].upper()}T_{gene}"


def write_kallisto(path: Path, values: dict) -> Path:
    """Write a kallisto abundance.tsv with versioned transcript ids."""
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [
        {
            "target_id": f"{tx}.1",
            "length": 1000,
            "eff_length": 800.0,
            "est_counts": count,
            "tpm": count * 10.0,
        }
        for tx, count in values.items()
    ]
    pd.DataFrame(rows).to_csv(path, sep="\t", index=False)
    return path


def signal_expression() -> dict:
    """{gene: {species: abundance}} for a small synthetic genome.

    G1 is 100 in trait-positive species and 1 elsewhere, G2 varies
    without regard to the trait, G3 is zero everywhere, G4 is high in
    trait-positive species with residuals that alternate in sign
    between sister species, and RARE is quantified in Human and Goat
    only.
    """
    noise = [40.0, 55.0, 61.0, 38.0, 47.0, 52.0]
    names = [sp for sp, _, _ in SPECIES]
    return {
        "G1": {sp: (100.0 if sp in POSITIVE else 1.0) for sp in names},
        "G2": dict(zip(names, noise)),
        "G3": {sp: 0.0 for sp in names},
        "G4": {
            "Human": 120.0,
            "Rat": 90.0,
            "Mouse": 2.0,
            "Zebrafish": 3.0,
            "Chicken": 1.0,
            "Goat": 100.0,
        },
        "RARE": {"Human": 7.0, "Goat": 3.0},
    }


def write_quant_dir(quant_dir: Path, expression: dict) -> Path:
    """Write one kallisto table per species from {gene: {species: value}}."""
    for species, _, _ in SPECIES:
        values = {
            transcript_id(species, gene): by_species[species]
            for gene, by_species in expression.items()
            if species in by_species
        }
        write_kallisto(quant_dir / accession(species) / "abundance.tsv", values)
    return quant_dir


def write_sample_sheet(path: Path, species=SPECIES) -> Path:
    rows = [
        {
            "accession": accession(sp),
            "species": sp,
            "organism": org,
            "calcifies": "yes" if calc else "no",
        }
        for sp, org, calc in species
    ]
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


class FakeTables:
    """Stands in for MappingTableCache with the synthetic genome."""

    def __init__(self, genes):
        self.genes = list(genes)
        self.organisms = {org: sp for sp, org, _ in SPECIES}

    def tx2gene(self, organism):
        species = self.organisms[organism]
        return pd.DataFrame(
            {
                "transcript_id": [transcript_id(species, g) for g in self.genes],
                "gene_id": [gene_id(species, g) for g in self.genes],
            }
        )

    def symbols(self, organism, symbol_attribute="hgnc_symbol"):
        species = self.organisms[organism]
        return pd.DataFrame(
            {
                "gene_id": [gene_id(species, g) for g in self.genes],
                "symbol": list(self.genes),
            }
        )


class FakeBackend:
    """Ortholog backend answering from a fixed one-to-one genome."""

    def __init__(self, name="fake", genes=(), error=None):
        self.name = name
        self.genes = list(genes)
        self.error = error
        self.calls = 0

    def fetch(self, gene_ids, organism, reference_organism):
        self.calls += 1
        if self.error:
            return OrthologFetchResult(backend=self.name, error=self.error)
        species = {org: sp for sp, org, _ in SPECIES}[organism]
        rows = [
            (gene_id(species, g), gene_id("Human", g))
            for g in self.genes
            if gene_id(species, g) in set(gene_ids)
        ]
        return OrthologFetchResult(
            backend=self.name,
            pairs=pd.DataFrame(rows, columns=["source", "target"]),
        )


@pytest.fixture
def tree_file(tmp_path):
    path = tmp_path / "species.nwk"
    path.write_text(NEWICK)
    return path


@pytest.fixture
def samples():
    return [
        Sample(accession=accession(sp), species=sp, organism=org, calcifies=calc)
        for sp, org, calc in SPECIES
    ]


@pytest.fixture
def sample_sheet(tmp_path):
    return write_sample_sheet(tmp_path / "samples.csv")
