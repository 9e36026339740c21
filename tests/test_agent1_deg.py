"""
Sunflower DEG Pipeline - Agent 1 (PyDESeq2 DEG analysis)
"""
import json

import numpy as np
import pandas as pd
import pytest

from sunflower_deg.agents import agent1_deg
from sunflower_deg.agents.agent1_deg import DEGAgent
from sunflower_deg.utils.deg_table import SampleMismatchError

pytestmark = pytest.mark.filterwarnings("ignore::UserWarning")


class TestInputValidation:
    """Input checks run before any model fitting."""

    def test_valid_inputs(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, sample_metadata)
        agent = DEGAgent(input_dir, tmp_path / "output")

        assert agent.validate_inputs()
        assert (agent.treatment, agent.reference) == ("treated", "control")
        assert list(agent.metadata.index) == list(sample_count_matrix.columns)

    def test_sample_mismatch_halts_before_fitting(
        self, tmp_path, write_inputs, sample_count_matrix, sample_metadata, monkeypatch
    ):
        metadata = sample_metadata[sample_metadata["sample_id"] != "CTRL_0"]
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, metadata)
        output_dir = tmp_path / "output"

        def fail_if_called(*args, **kwargs):
            raise AssertionError("model fitting must not start")

        monkeypatch.setattr(agent1_deg, "DeseqDataSet", fail_if_called)

        agent = DEGAgent(input_dir, output_dir)
        with pytest.raises(SampleMismatchError, match="CTRL_0"):
            agent.execute()

        assert not (output_dir / "sunflower_full_differential_expression_results.csv").exists()

        with open(output_dir / "meta_agent1_deg.json") as f:
            meta = json.load(f)
        assert meta["success"] is False
        assert "CTRL_0" in meta["errors"][0]

    def test_missing_condition_column(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        metadata = sample_metadata.rename(columns={"condition": "treatment"})
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, metadata)

        with pytest.raises(ValueError, match="Input validation failed"):
            DEGAgent(input_dir, tmp_path / "output").execute()

    def test_custom_condition_column(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        metadata = sample_metadata.rename(columns={"condition": "treatment"})
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, metadata)
        agent = DEGAgent(input_dir, tmp_path / "output", config={"condition_column": "treatment"})

        assert agent.validate_inputs()

    def test_negative_counts(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        counts = sample_count_matrix.copy()
        counts.iloc[0, 0] = -1
        input_dir = write_inputs(tmp_path / "input", counts, sample_metadata)

        assert not DEGAgent(input_dir, tmp_path / "output").validate_inputs()

    def test_non_integer_counts(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        counts = sample_count_matrix.astype(float)
        counts.iloc[3, 2] = 1.5
        input_dir = write_inputs(tmp_path / "input", counts, sample_metadata)

        assert not DEGAgent(input_dir, tmp_path / "output").validate_inputs()

    def test_unknown_contrast_level(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, sample_metadata)
        agent = DEGAgent(input_dir, tmp_path / "output", config={"contrast": ["heat", "control"]})

        with pytest.raises(ValueError, match="not in conditions"):
            agent.validate_inputs()

    def test_missing_counts_file(self, tmp_path):
        (tmp_path / "input").mkdir()
        with pytest.raises(FileNotFoundError):
            DEGAgent(tmp_path / "input", tmp_path / "output").execute()


class TestDEGRun:
    """Full PyDESeq2 run on the synthetic matrix."""

    @pytest.fixture
    def deg_run(self, tmp_path, write_inputs, sample_count_matrix, sample_metadata):
        counts = sample_count_matrix.copy()
        # Filter boundary genes
        counts.loc["LOW_9"] = [1, 1, 1, 1, 1, 1, 1, 1, 1, 0]
        counts.loc["EXACT_10"] = [1] * 10
        input_dir = write_inputs(tmp_path / "input", counts, sample_metadata)
        output_dir = tmp_path / "output"

        agent = DEGAgent(input_dir, output_dir)
        results = agent.execute()
        return agent, results, output_dir

    def test_outputs_written(self, deg_run):
        agent, _, output_dir = deg_run
        for filename in agent.outputs.values():
            if filename.endswith(".csv"):
                assert (output_dir / filename).stat().st_size > 0
        assert (output_dir / "meta_agent1_deg.json").exists()
        assert (output_dir / "log_agent1_deg.txt").exists()

    def test_filter_applied(self, deg_run):
        _, results, output_dir = deg_run
        full = pd.read_csv(output_dir / "sunflower_full_differential_expression_results.csv")

        assert "LOW_9" not in set(full["gene_id"])
        assert "EXACT_10" in set(full["gene_id"])
        assert results["input_genes"] == 102
        assert results["total_genes"] == len(full)

    def test_results_ordered(self, deg_run):
        _, _, output_dir = deg_run
        full = pd.read_csv(output_dir / "sunflower_full_differential_expression_results.csv")

        assert list(full.columns) == ["gene_id", "baseMean", "log2FoldChange", "lfcSE",
                                      "stat", "pvalue", "padj"]
        tested = full["padj"].dropna()
        assert tested.is_monotonic_increasing
        assert full["padj"].iloc[len(tested):].isna().all()

    def test_significant_subset(self, deg_run):
        _, results, output_dir = deg_run
        full = pd.read_csv(output_dir / "sunflower_full_differential_expression_results.csv")
        sig = pd.read_csv(output_dir / "sunflower_significant_differential_expression_results.csv")

        expected = full[full["padj"] < 0.05]["gene_id"].tolist()
        assert sig["gene_id"].tolist() == expected
        assert len(sig) < len(full)
        assert results["deg_count"] == len(sig)
        assert results["up_count"] + results["down_count"] == len(sig)

    def test_differential_genes_detected(self, deg_run):
        _, _, output_dir = deg_run
        sig = pd.read_csv(output_dir / "sunflower_significant_differential_expression_results.csv")
        sig = sig.set_index("gene_id")

        up = [f"GENE{i}" for i in range(10)]
        down = [f"GENE{i}" for i in range(10, 20)]
        assert set(up) <= set(sig.index)
        assert set(down) <= set(sig.index)
        assert (sig.loc[up, "direction"] == "up").all()
        assert (sig.loc[down, "direction"] == "down").all()

    def test_model_tables(self, deg_run, sample_count_matrix):
        agent, _, output_dir = deg_run
        size_factors = pd.read_csv(output_dir / "sunflower_size_factors.csv")
        vst = pd.read_csv(output_dir / "sunflower_vst_counts.csv", index_col=0)
        dispersions = pd.read_csv(output_dir / "sunflower_dispersions.csv")

        assert list(size_factors["sample_id"]) == list(sample_count_matrix.columns)
        assert list(size_factors["condition"]) == ["control"] * 5 + ["treated"] * 5
        assert (size_factors["size_factor"] > 0).all()
        assert list(vst.columns) == list(sample_count_matrix.columns)
        assert len(vst) == len(dispersions) == agent.dds.n_vars
        assert (dispersions["dispersion"] > 0).all()

        np.testing.assert_allclose(size_factors["size_factor"], agent.dds.obs["size_factors"])
        np.testing.assert_allclose(dispersions["genewise_dispersion"],
                                   agent.dds.var["genewise_dispersions"])
        np.testing.assert_allclose(dispersions["dispersion"], agent.dds.var["dispersions"])

    def test_independent_filtering_alpha(self, tmp_path, write_inputs, sample_count_matrix,
                                         sample_metadata, monkeypatch):
        input_dir = write_inputs(tmp_path / "input", sample_count_matrix, sample_metadata)
        seen = {}
        real_stats = agent1_deg.DeseqStats

        def recording_stats(*args, **kwargs):
            seen.update(kwargs)
            return real_stats(*args, **kwargs)

        monkeypatch.setattr(agent1_deg, "DeseqStats", recording_stats)
        DEGAgent(input_dir, tmp_path / "output", {"padj_cutoff": 0.01}).execute()

        assert seen["alpha"] == 0.1

    def test_meta_json(self, deg_run):
        _, _, output_dir = deg_run
        with open(output_dir / "meta_agent1_deg.json") as f:
            meta = json.load(f)

        assert meta["success"] is True
        assert meta["method_used"] == "PyDESeq2"
        assert meta["treatment"] == "treated"
        assert meta["reference"] == "control"

    def test_empty_after_filtering(self, tmp_path, write_inputs, sample_metadata):
        samples = sample_metadata["sample_id"].tolist()
        counts = pd.DataFrame(np.zeros((5, 10), dtype=int), columns=samples,
                              index=[f"G{i}" for i in range(5)])
        input_dir = write_inputs(tmp_path / "input", counts, sample_metadata)

        with pytest.raises(ValueError, match="No genes left"):
            DEGAgent(input_dir, tmp_path / "output").execute()
