"""Unit tests for the per-gene engine and multiple-testing correction."""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from conftest import NEWICK, POSITIVE, SPECIES
from pineal_pgls.config import PGLSConfig
from pineal_pgls.errors import PGLSFitError, TipAlignmentError, TipMismatchError
from pineal_pgls.model import FilteredMatrix
from pineal_pgls.phylo.engine import (
    RESULT_COLUMNS,
    benjamini_hochberg,
    build_observation_table,
    fit_gene,
    fit_observations,
    run_engine,
)
from pineal_pgls.phylo.tree import PhylogeneticTree

SPECIES_NAMES = [sp for sp, _, _ in SPECIES]


@pytest.fixture
def tree():
    return PhylogeneticTree.from_newick(NEWICK)


@pytest.fixture
def traits():
    return pd.Series({sp: int(sp in POSITIVE) for sp in SPECIES_NAMES})


def _filtered(genes):
    """FilteredMatrix from {gene: {species: value}}."""
    counts = pd.DataFrame(genes).T[SPECIES_NAMES]
    counts.columns = [f"{sp}_S" for sp in SPECIES_NAMES]
    counts.index.name = "gene"
    return FilteredMatrix(
        counts=counts.astype(float),
        sample_species={f"{sp}_S": sp for sp in SPECIES_NAMES},
    )


def _signal():
    return {sp: (100.0 if sp in POSITIVE else 1.0) for sp in SPECIES_NAMES}


def _noise(seed):
    rng = np.random.RandomState(seed)
    return {sp: float(rng.poisson(50)) for sp in SPECIES_NAMES}


class TestBuildObservationTable:

    def test_tip_order_and_log_transform(self, tree, traits):
        expression = pd.Series({sp: 3.0 for sp in SPECIES_NAMES})

        obs = build_observation_table(expression, traits, tree.tip_labels)

        assert tuple(obs.index) == tree.tip_labels
        assert np.allclose(obs["expression"], 2.0)
        assert obs.loc["Goat", "trait"] == 1.0

    def test_missing_species(self, tree, traits):
        expression = pd.Series({sp: 1.0 for sp in SPECIES_NAMES if sp != "Goat"})

        with pytest.raises(TipMismatchError, match="Goat"):
            build_observation_table(expression, traits, tree.tip_labels)


class TestAlignment:

    def test_swapped_rows_are_fatal(self, tree, traits):
        obs = build_observation_table(pd.Series(_signal()), traits, tree.tip_labels)
        order = list(obs.index)
        order[0], order[1] = order[1], order[0]

        with pytest.raises(TipAlignmentError):
            fit_observations("G1", obs.loc[order], tree, PGLSConfig())

    def test_swapped_tree_tips_are_fatal(self, traits):
        # Same topology with the first two tip labels exchanged
        swapped_newick = (
            NEWICK.replace("Human", "TMP").replace("Rat", "Human").replace("TMP", "Rat")
        )
        swapped = PhylogeneticTree.from_newick(swapped_newick)
        original = PhylogeneticTree.from_newick(NEWICK)
        obs = build_observation_table(pd.Series(_signal()), traits, original.tip_labels)

        with pytest.raises(TipAlignmentError):
            fit_observations("G1", obs, swapped, PGLSConfig())


class TestFitGene:

    def test_signal_gene(self, tree, traits):
        result = fit_gene("G1", pd.Series(_signal()), tree, traits)

        assert result.bm_log2fc == pytest.approx(np.log2(101.0) - 1.0)
        assert result.lambda_log2fc == pytest.approx(np.log2(101.0) - 1.0)
        assert result.bm_pvalue < 0.05
        assert result.lambda_pvalue < 0.05
        assert not result.bm_failed
        assert not result.lambda_failed

    def test_failure_recorded_not_zeroed(self, tree, traits):
        with patch(
            "pineal_pgls.phylo.engine.fit_lambda",
            side_effect=PGLSFitError("did not converge"),
        ):
            result = fit_gene("G1", pd.Series(_signal()), tree, traits)

        assert result.lambda_failed
        assert result.lambda_error == "did not converge"
        assert np.isnan(result.lambda_pvalue)
        assert np.isnan(result.lambda_log2fc)
        assert not result.bm_failed


class TestBenjaminiHochberg:

    def test_canonical_sequence(self):
        pvalues = [0.001, 0.01, 0.02, 0.5]

        adjusted = benjamini_hochberg(pd.Series(pvalues))

        # p_(i) * n / i, then running minimum from the largest rank down
        n = len(pvalues)
        raw = [p * n / (i + 1) for i, p in enumerate(pvalues)]
        expected = list(np.minimum.accumulate(raw[::-1])[::-1])
        assert adjusted.tolist() == pytest.approx(expected)
        assert adjusted.tolist() == pytest.approx([0.004, 0.02, 0.02 * 4 / 3, 0.5])

    def test_adjusted_not_below_raw_and_order_preserved(self):
        pvalues = pd.Series([0.04, 0.001, 0.3, 0.02, 0.9])

        adjusted = benjamini_hochberg(pvalues)

        assert (adjusted >= pvalues).all()
        ranks = pvalues.sort_values().index
        assert adjusted[ranks].is_monotonic_increasing

    def test_missing_excluded_from_denominator(self):
        adjusted = benjamini_hochberg(pd.Series([0.01, np.nan, 0.04]))

        assert np.isnan(adjusted[1])
        assert adjusted[0] == pytest.approx(0.02)
        assert adjusted[2] == pytest.approx(0.04)

    def test_all_missing(self):
        adjusted = benjamini_hochberg(pd.Series([np.nan, np.nan]))
        assert adjusted.isna().all()


class TestRunEngine:

    def test_one_row_per_gene_in_matrix_order(self, tree, traits):
        filtered = _filtered({"G1": _signal(), "G2": _noise(1), "G3": _noise(2)})

        table = run_engine(filtered, tree, traits)

        assert list(table.columns) == RESULT_COLUMNS
        assert table["gene"].tolist() == ["G1", "G2", "G3"]
        g1 = table.set_index("gene").loc["G1"]
        assert g1["bm_log2fc"] > 1
        assert g1["lambda_log2fc"] > 1
        assert g1["bm_padj"] >= g1["bm_pvalue"]

    def test_failed_fits_are_missing_in_table(self, tree, traits):
        filtered = _filtered({"G1": _signal(), "G2": _noise(1)})

        with patch(
            "pineal_pgls.phylo.engine.fit_brownian",
            side_effect=np.linalg.LinAlgError("singular"),
        ):
            table = run_engine(filtered, tree, traits)

        assert table["bm_pvalue"].isna().all()
        assert table["bm_padj"].isna().all()
        assert (table["bm_error"] == "singular").all()
        assert table["lambda_pvalue"].notna().all()

    def test_species_mismatch(self, tree, traits):
        filtered = _filtered({"G1": _signal()})
        filtered = FilteredMatrix(
            counts=filtered.counts.drop(columns="Goat_S"),
            sample_species={k: v for k, v in filtered.sample_species.items() if v != "Goat"},
        )

        with pytest.raises(TipMismatchError):
            run_engine(filtered, tree, traits)

    def test_process_pool_matches_serial(self, tree, traits):
        filtered = _filtered({"G1": _signal(), "G2": _noise(1), "G3": _noise(2)})

        serial = run_engine(filtered, tree, traits, PGLSConfig(workers=1))
        pooled = run_engine(filtered, tree, traits, PGLSConfig(workers=2))

        pd.testing.assert_frame_equal(serial, pooled)


class TestConstantExpression:

    def test_no_trait_effect_under_either_model(self, tree, traits):
        flat = pd.Series({sp: 25.0 for sp in SPECIES_NAMES})

        result = fit_gene("FLAT", flat, tree, traits)

        assert result.bm_log2fc == pytest.approx(0.0, abs=1e-9)
        assert result.lambda_log2fc == pytest.approx(0.0, abs=1e-9)
