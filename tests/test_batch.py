"""Tests for multi-study runs, the cross-study table and the CLI."""

import pandas as pd
import pytest
import yaml
from conftest import study_config
from typer.testing import CliRunner

from deflux.cli import app
from deflux.main import run_pipeline
from deflux.workflow.batch import _worker, joint_table, run_studies, study_configs


@pytest.fixture
def two_studies(benchmark_file, tmp_path):
    broken = study_config(benchmark_file, tmp_path / "broken")
    broken["dataset"]["metadata"] = broken["dataset"]["metadata"][:4]
    return {
        "max_workers": 1,
        "studies": {
            "first": study_config(benchmark_file, tmp_path / "first"),
            "broken": broken,
            "second": study_config(
                benchmark_file, tmp_path / "second", preprocessing={"rollup": {"method": "median_centered"}}
            ),
        },
    }


class TestStudyConfigs:
    def test_single_study(self, benchmark_file, tmp_path):
        cfg = study_config(benchmark_file, tmp_path)
        assert study_configs(cfg) == {"study": cfg}

    def test_empty_studies(self):
        with pytest.raises(ValueError, match="studies"):
            study_configs({"studies": {}})


class TestRunStudies:
    """Independent studies: one failure never stops the others."""

    def test_failure_isolated(self, two_studies, tmp_path):
        report = run_studies(two_studies)

        assert list(report.outcomes) == ["first", "broken", "second"]
        assert report.succeeded == ["first", "second"]
        assert report.failed == ["broken"]
        assert not report.ok
        assert report.outcomes["broken"].error_kind == "SchemaMismatchError"
        assert (tmp_path / "first" / "first_results.tsv").exists()
        assert (tmp_path / "second" / "second_results.tsv").exists()
        assert not (tmp_path / "broken").exists()

    def test_worker_entry_point(self, benchmark_file, tmp_path):
        """The process-pool entry point runs a study in the calling process."""
        outcome = _worker(("solo", study_config(benchmark_file, tmp_path), 20))
        assert outcome.ok
        assert outcome.name == "solo"


class TestJointTable:
    def test_shared_features(self, two_studies):
        two_studies["studies"].pop("broken")
        results = run_studies(two_studies).results()
        joint = joint_table(results)

        assert len(joint) == 10
        assert joint.columns[0] == "FEATURE_ID"
        assert "first_log2FC_B_vs_A" in joint.columns
        assert "second_QVALUE_B_vs_A" in joint.columns
        assert joint["FEATURE_ID"].tolist() == results["first"].table.index.tolist()

    def test_intersection_on_column(self, benchmark_file, tmp_path):
        config = {
            "max_workers": 1,
            "studies": {
                "proteins": study_config(benchmark_file, tmp_path / "p"),
                "peptides": study_config(benchmark_file, tmp_path / "q", dataset={"feature_level": "peptide"}),
            },
        }
        results = run_studies(config).results()
        joint = joint_table(results, on="PROTEIN_ID")

        # one row per protein, first peptide of each protein on the peptide side
        assert len(joint) == 10
        assert joint.columns[0] == "PROTEIN_ID"
        assert "peptides_T_B_vs_A" in joint.columns

    def test_unknown_column(self, two_studies):
        two_studies["studies"].pop("broken")
        results = run_studies(two_studies).results()
        with pytest.raises(KeyError, match="GENE"):
            joint_table(results, on="GENE")

    def test_run_pipeline_writes_joint(self, two_studies, tmp_path):
        two_studies["joint"] = {"path": str(tmp_path / "joint.tsv")}
        report = run_pipeline(two_studies)

        assert report.failed == ["broken"]
        joint = pd.read_csv(tmp_path / "joint.tsv", sep="\t")
        assert len(joint) == 10


class TestCli:
    """Tests for the typer command line."""

    def test_init_writes_template(self, tmp_path):
        target = tmp_path / "config.yaml"
        result = CliRunner().invoke(app, ["init", str(target)])

        assert result.exit_code == 0
        config = yaml.safe_load(target.read_text())
        assert set(config["studies"]) == {"benchmark_dia", "rnaseq"}

    def test_run_exit_codes(self, two_studies, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump(two_studies))

        result = CliRunner().invoke(app, ["run", "--config", str(config_path)])
        assert result.exit_code == 1

        two_studies["studies"].pop("broken")
        config_path.write_text(yaml.safe_dump(two_studies))
        result = CliRunner().invoke(app, ["run", "-c", str(config_path), "--max-workers", "1"])
        assert result.exit_code == 0

    def test_run_rejects_non_mapping(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("- just\n- a list\n")
        result = CliRunner().invoke(app, ["run", "-c", str(config_path)])
        assert result.exit_code == 2
