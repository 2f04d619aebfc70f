"""Unit tests for sample sheet and trait table loading."""

import pandas as pd
import pytest

from conftest import SPECIES, write_sample_sheet
from pineal_pgls.errors import SampleSheetError
from pineal_pgls.samples import (
    default_display_order,
    load_sample_sheet,
    parse_trait_label,
    trait_table,
)


class TestParseTraitLabel:

    @pytest.mark.parametrize("label", ["yes", "Y", "TRUE", "1", "calcified"])
    def test_positive_labels(self, label):
        assert parse_trait_label(label) is True

    @pytest.mark.parametrize("label", ["no", "N", "false", "0", "non-calcified"])
    def test_negative_labels(self, label):
        assert parse_trait_label(label) is False

    def test_unknown_label_raises(self):
        with pytest.raises(SampleSheetError, match="Unrecognized"):
            parse_trait_label("maybe")


class TestLoadSampleSheet:

    def test_loads_in_sheet_order(self, sample_sheet):
        samples = load_sample_sheet(sample_sheet, "Human")

        assert [s.species for s in samples] == [sp for sp, _, _ in SPECIES]
        assert samples[0].sample_name == "Human_SRR_HUMAN"
        assert samples[0].organism == "hsapiens"
        assert samples[0].calcifies is True
        assert samples[2].trait == 0

    def test_tab_separated(self, tmp_path):
        csv_path = write_sample_sheet(tmp_path / "samples.csv")
        tsv_path = tmp_path / "samples.tsv"
        pd.read_csv(csv_path).to_csv(tsv_path, sep="\t", index=False)

        samples = load_sample_sheet(tsv_path, "Human")
        assert len(samples) == len(SPECIES)

    def test_relative_abundance_path_resolved_to_sheet(self, tmp_path):
        df = pd.read_csv(write_sample_sheet(tmp_path / "samples.csv"))
        df["abundance_path"] = ["quant/" + a + "/abundance.tsv" for a in df["accession"]]
        df.to_csv(tmp_path / "samples.csv", index=False)

        samples = load_sample_sheet(tmp_path / "samples.csv", "Human")
        assert samples[0].abundance_path == tmp_path / "quant" / "SRR_HUMAN" / "abundance.tsv"

    def test_missing_file(self, tmp_path):
        with pytest.raises(SampleSheetError, match="not found"):
            load_sample_sheet(tmp_path / "nope.csv", "Human")

    def test_missing_column(self, tmp_path):
        path = tmp_path / "samples.csv"
        pd.DataFrame({"accession": ["A"], "species": ["Human"]}).to_csv(path, index=False)

        with pytest.raises(SampleSheetError, match="organism, calcifies"):
            load_sample_sheet(path, "Human")

    def test_duplicate_species_rejected(self, tmp_path):
        species = SPECIES + [("Human", "hsapiens", False)]
        path = write_sample_sheet(tmp_path / "samples.csv", species)
        df = pd.read_csv(path)
        df.loc[len(df) - 1, "accession"] = "SRR_OTHER"
        df.to_csv(path, index=False)

        with pytest.raises(SampleSheetError, match="More than one sample"):
            load_sample_sheet(path, "Human")

    def test_missing_reference(self, sample_sheet):
        with pytest.raises(SampleSheetError, match="Reference species"):
            load_sample_sheet(sample_sheet, "Platypus")

    def test_single_trait_label_rejected(self, tmp_path):
        species = [(sp, org, True) for sp, org, _ in SPECIES]
        path = write_sample_sheet(tmp_path / "samples.csv", species)

        with pytest.raises(SampleSheetError, match="one trait label"):
            load_sample_sheet(path, "Human")


class TestTraitTable:

    def test_from_samples(self, samples):
        traits = trait_table(samples)

        assert traits["Human"] == 1
        assert traits["Mouse"] == 0
        assert traits.name == "calcifies"

    def test_override(self, samples, tmp_path):
        path = tmp_path / "traits.csv"
        rows = {sp: ("no" if sp == "Goat" else ("yes" if calc else "no")) for sp, _, calc in SPECIES}
        pd.DataFrame({"species": list(rows), "trait": list(rows.values())}).to_csv(path, index=False)

        traits = trait_table(samples, path)
        assert traits["Goat"] == 0
        assert traits["Rat"] == 1

    def test_override_missing_species(self, samples, tmp_path):
        path = tmp_path / "traits.csv"
        pd.DataFrame({"species": ["Human"], "trait": ["yes"]}).to_csv(path, index=False)

        with pytest.raises(SampleSheetError, match="lacks species"):
            trait_table(samples, path)


class TestDisplayOrder:

    def test_positive_first(self, samples):
        order = default_display_order(samples)

        assert order[:3] == ["Human_SRR_HUMAN", "Rat_SRR_RAT", "Goat_SRR_GOAT"]
        assert order[3:] == ["Mouse_SRR_MOUSE", "Zebrafish_SRR_ZEBRAFISH", "Chicken_SRR_CHICKEN"]
