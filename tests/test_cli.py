"""Tests for the command-line interface."""

from functools import partial
from unittest.mock import MagicMock, patch

import pandas as pd
from click.testing import CliRunner

from conftest import FakeBackend, FakeTables, signal_expression, write_quant_dir
from pineal_pgls.cli import cli
from pineal_pgls.harmonize.orthologs import OrthologResolver
from pineal_pgls.pipeline import run_pipeline

GENES = list(signal_expression())


def _offline_pipeline():
    resolver = OrthologResolver(FakeBackend("gprofiler", genes=GENES), FakeBackend("biomart"))
    return partial(run_pipeline, tables=FakeTables(GENES), resolver=resolver)


class TestRunCommand:

    def test_writes_results(self, sample_sheet, tree_file, tmp_path):
        quant_dir = write_quant_dir(tmp_path / "quant", signal_expression())
        out = tmp_path / "out"

        with patch("pineal_pgls.cli.run_pipeline", _offline_pipeline()):
            result = CliRunner().invoke(
                cli,
                [
                    "run",
                    "--samples", str(sample_sheet),
                    "--tree", str(tree_file),
                    "--quant-dir", str(quant_dir),
                    "--output-dir", str(out),
                    "--cache-dir", str(tmp_path / "cache"),
                ],
            )

        assert result.exit_code == 0, result.output
        assert "Genes tested: 4" in result.output
        assert (out / "pgls_results.csv").exists()
        assert (out / "provenance.json").exists()

    def test_integrity_error_is_reported(self, sample_sheet, tmp_path):
        tree = tmp_path / "bad.nwk"
        tree.write_text("((Human:1,Rat:1):1,(Mouse:1,Medaka:1):1);")

        result = CliRunner().invoke(
            cli,
            ["run", "--samples", str(sample_sheet), "--tree", str(tree)],
        )

        assert result.exit_code == 1
        assert "Tree tips do not match" in result.output

    def test_bad_conflict_policy(self, sample_sheet, tree_file):
        result = CliRunner().invoke(
            cli,
            [
                "run",
                "--samples", str(sample_sheet),
                "--tree", str(tree_file),
                "--conflict-policy", "keep_all",
            ],
        )
        assert result.exit_code == 2


class TestSelectCommand:

    def test_reselects_with_new_thresholds(self, tmp_path):
        pd.DataFrame(
            {
                "gene": ["A", "B"],
                "bm_log2fc": [2.0, 0.5],
                "bm_pvalue": [0.001, 0.001],
                "bm_padj": [0.01, 0.01],
                "lambda_log2fc": [2.0, 0.5],
                "lambda_pvalue": [0.001, 0.0001],
                "lambda_padj": [0.01, 0.01],
                "lambda": [0.1, 0.1],
                "lambda_loglik": [-1.0, -1.0],
                "bm_error": [None, None],
                "lambda_error": [None, None],
            }
        ).to_csv(tmp_path / "pgls_results.csv", index=False)

        strict = CliRunner().invoke(cli, ["select", "--results-dir", str(tmp_path)])
        assert strict.exit_code == 0, strict.output
        assert "Hits: 1 of 2" in strict.output

        loose = CliRunner().invoke(
            cli, ["select", "--results-dir", str(tmp_path), "--min-log2fc", "0.2"]
        )
        assert "Hits: 2 of 2" in loose.output
        hits = pd.read_csv(tmp_path / "hits.csv")
        assert hits["gene"].tolist() == ["B", "A"]

    def test_na_symbol_kept_as_gene(self, tmp_path):
        pd.DataFrame(
            {
                "gene": ["NA", "NULL"],
                "bm_log2fc": [2.0, 2.0],
                "bm_pvalue": [0.001, 0.002],
                "bm_padj": [0.01, 0.01],
                "lambda_log2fc": [2.0, 2.0],
                "lambda_pvalue": [0.001, 0.002],
                "lambda_padj": [0.01, 0.01],
                "lambda": [0.1, 0.1],
                "lambda_loglik": [-1.0, -1.0],
                "bm_error": [None, None],
                "lambda_error": [None, None],
            }
        ).to_csv(tmp_path / "pgls_results.csv", index=False)

        result = CliRunner().invoke(cli, ["select", "--results-dir", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "Hits: 2 of 2" in result.output
        hits = pd.read_csv(tmp_path / "hits.csv", keep_default_na=False)
        assert hits["gene"].tolist() == ["NA", "NULL"]

    def test_missing_results(self, tmp_path):
        result = CliRunner().invoke(cli, ["select", "--results-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "No results table" in result.output


class TestFetchTablesCommand:

    def test_fetches_every_organism(self, sample_sheet, tmp_path):
        tables = MagicMock()
        tables.tx2gene.return_value = pd.DataFrame({"transcript_id": ["T"], "gene_id": ["G"]})
        tables.symbols.return_value = pd.DataFrame({"gene_id": ["G"], "symbol": ["S"]})

        with patch("pineal_pgls.cli.MappingTableCache", return_value=tables):
            result = CliRunner().invoke(
                cli,
                ["fetch-tables", "--samples", str(sample_sheet), "--cache-dir", str(tmp_path)],
            )

        assert result.exit_code == 0, result.output
        organisms = sorted(call.args[0] for call in tables.tx2gene.call_args_list)
        assert organisms == sorted(
            ["hsapiens", "rnorvegicus", "mmusculus", "drerio", "ggallus", "chircus"]
        )
        tables.symbols.assert_called_once_with("hsapiens", "hgnc_symbol")
