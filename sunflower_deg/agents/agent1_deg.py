"""
Agent 1: Differential Expression Gene (DEG) Analysis

Uses PyDESeq2 to normalize counts, fit the negative-binomial GLM, compute the
variance-stabilizing transform and run Wald tests between two conditions.

Input:
- <prefix>_gene_counts.csv: Gene expression count matrix (genes x samples)
- <prefix>_sample_metadata.csv: Sample metadata with condition column

Output:
- <prefix>_full_differential_expression_results.csv: All tested genes, ordered by padj
- <prefix>_significant_differential_expression_results.csv: padj < cutoff
- <prefix>_normalized_counts.csv: Size-factor normalized counts
- <prefix>_vst_counts.csv: Variance-stabilized counts
- <prefix>_size_factors.csv / <prefix>_dispersions.csv: Model estimates
- meta_agent1_deg.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from .. import config as settings
from ..utils.base_agent import BaseAgent
from ..utils.deg_table import (
    RESULT_COLUMNS,
    add_direction,
    check_sample_correspondence,
    filter_low_count_genes,
    order_by_padj,
    resolve_contrast,
    significant_subset,
)


class DEGAgent(BaseAgent):
    """Agent for PyDESeq2-based differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "dataset_prefix": settings.DATASET_PREFIX,
            "condition_column": settings.CONDITION_COLUMN,
            "contrast": None,  # [treatment, reference]; None = last vs first level
            "min_count_filter": settings.MIN_COUNT_FILTER,
            "padj_cutoff": settings.PADJ_CUTOFF,
            # Independent filtering target, as in DESeq2's results(dds)
            "independent_filter_alpha": 0.1,
            "refit_cooks": True,
            "use_lfc_shrinkage": False,
            "fit_type": "auto",  # parametric | mean | auto
            "min_genes_parametric_fit": 100,
            "n_cpus": settings.N_CPUS,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_deg", input_dir, output_dir, merged_config)

        prefix = self.config["dataset_prefix"]
        self.inputs = settings.input_filenames(prefix)
        self.outputs = settings.output_filenames(prefix)

        self.count_matrix: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.treatment: Optional[str] = None
        self.reference: Optional[str] = None
        self.dds: Optional[DeseqDataSet] = None

    def validate_inputs(self) -> bool:
        """Validate count matrix and metadata."""
        self.count_matrix = self.load_csv(self.inputs["counts"], index_col=0)
        self.metadata = self.load_csv(self.inputs["metadata"], index_col=0)

        self.count_matrix.index = self.count_matrix.index.astype(str)
        self.count_matrix.columns = self.count_matrix.columns.astype(str)
        self.metadata.index = self.metadata.index.astype(str)

        condition_col = self.config["condition_column"]
        if condition_col not in self.metadata.columns:
            self.logger.error(f"Condition column '{condition_col}' not in metadata")
            return False

        # Fail fast, before any model fitting
        unused = check_sample_correspondence(self.count_matrix, self.metadata)
        if unused:
            self.logger.warning(f"Metadata samples without counts (ignored): {unused}")

        values = self.count_matrix.to_numpy(dtype=float)
        if np.isnan(values).any():
            self.logger.error("Count matrix contains missing values")
            return False
        if (values < 0).any():
            self.logger.error("Count matrix contains negative counts")
            return False
        if not np.all(np.mod(values, 1) == 0):
            self.logger.error("Count matrix contains non-integer counts")
            return False
        self.count_matrix = self.count_matrix.astype(int)

        self.metadata = self.metadata.loc[self.count_matrix.columns]
        conditions = self.metadata[condition_col].astype(str)
        self.treatment, self.reference = resolve_contrast(conditions, self.config["contrast"])

        self.logger.info(
            f"Count matrix: {self.count_matrix.shape[0]} genes, "
            f"{self.count_matrix.shape[1]} samples"
        )
        self.logger.info(f"Conditions: {conditions.value_counts().to_dict()}")
        self.logger.info(f"Contrast: {self.treatment} vs {self.reference}")

        return True

    def _fit_model(self, count_df: pd.DataFrame) -> DeseqDataSet:
        """Size factors, dispersions and GLM coefficients."""
        condition_col = self.config["condition_column"]
        meta_df = self.metadata[[condition_col]].astype(str)

        # The parametric dispersion trend is unstable on small gene sets
        fit_type = self.config["fit_type"]
        if fit_type == "auto":
            enough_genes = len(count_df) >= self.config["min_genes_parametric_fit"]
            fit_type = "parametric" if enough_genes else "mean"

        self.logger.info(f"Using design: ~ {condition_col} (fit_type={fit_type})")
        dds = DeseqDataSet(
            counts=count_df.T,
            metadata=meta_df,
            design=f"~{condition_col}",
            refit_cooks=self.config["refit_cooks"],
            fit_type=fit_type,
            n_cpus=self.config["n_cpus"],
            quiet=True,
        )

        self.logger.info("Running DESeq2 (size factors, dispersions, LFC)...")
        dds.deseq2()
        return dds

    def _test(self, dds: DeseqDataSet) -> pd.DataFrame:
        """Wald test and BH adjustment for the configured contrast."""
        condition_col = self.config["condition_column"]
        self.logger.info(f"Extracting results for contrast: {self.treatment} vs {self.reference}")

        stat_res = DeseqStats(
            dds,
            contrast=[condition_col, self.treatment, self.reference],
            alpha=self.config["independent_filter_alpha"],
            quiet=True,
        )
        stat_res.summary()

        if self.config.get("use_lfc_shrinkage", False):
            try:
                self.logger.info("Applying LFC shrinkage...")
                lfc_names = list(dds.varm["LFC"].columns)
                self.logger.info(f"Available coefficients: {lfc_names}")

                matching_coef = None
                for name in lfc_names:
                    if condition_col in name and self.treatment in name:
                        matching_coef = name
                        break

                if matching_coef:
                    self.logger.info(f"Using coefficient: {matching_coef}")
                    stat_res.lfc_shrink(coeff=matching_coef)
                else:
                    self.logger.warning(
                        f"No coefficient for {self.treatment} vs {self.reference}, using unshrunk LFC"
                    )
            except Exception as e:
                self.logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")

        results_df = stat_res.results_df.copy()
        results_df.index.name = "gene_id"
        return results_df[RESULT_COLUMNS]

    def _model_tables(self, dds: DeseqDataSet) -> Dict[str, pd.DataFrame]:
        """Normalized counts, VST counts, size factors and dispersions."""
        samples = list(dds.obs_names)
        genes = list(dds.var_names)

        normed = pd.DataFrame(dds.layers["normed_counts"], index=samples, columns=genes).T
        vst = pd.DataFrame(dds.layers["vst_counts"], index=samples, columns=genes).T

        condition_col = self.config["condition_column"]
        size_factors = pd.DataFrame({
            "sample_id": samples,
            condition_col: self.metadata.loc[samples, condition_col].astype(str).values,
            "size_factor": np.asarray(dds.obs["size_factors"]),
        })

        dispersions = pd.DataFrame({
            "gene_id": genes,
            "baseMean": normed.mean(axis=1).values,
            "genewise_dispersion": np.asarray(dds.var["genewise_dispersions"]),
            "fitted_dispersion": np.asarray(dds.var["fitted_dispersions"]),
            "MAP_dispersion": np.asarray(dds.var["MAP_dispersions"]),
            "dispersion": np.asarray(dds.var["dispersions"]),
        })

        return {
            "normalized_counts": normed.rename_axis("gene_id").reset_index(),
            "vst_counts": vst.rename_axis("gene_id").reset_index(),
            "size_factors": size_factors,
            "dispersions": dispersions,
        }

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis."""
        min_count = self.config["min_count_filter"]
        count_df = filter_low_count_genes(self.count_matrix, min_count)
        self.logger.info(f"After filtering (min_count={min_count}): {len(count_df)} genes")
        if count_df.empty:
            raise ValueError(f"No genes left after filtering with min_count={min_count}")

        self.dds = self._fit_model(count_df)

        self.logger.info("Computing variance-stabilizing transform...")
        self.dds.vst(use_design=False)

        results_df = self._test(self.dds)

        na_count = int(results_df['padj'].isna().sum())
        self.logger.info(f"NA padj values (filtered by DESeq2): {na_count}")

        ordered = order_by_padj(results_df)
        padj_cutoff = self.config["padj_cutoff"]
        significant = add_direction(significant_subset(ordered, padj_cutoff))

        self.save_csv(ordered.reset_index(), self.outputs["full_results"])
        self.save_csv(significant.reset_index(), self.outputs["significant_results"])

        for key, table in self._model_tables(self.dds).items():
            self.save_csv(table, self.outputs[key])

        up_count = int((significant['direction'] == 'up').sum())
        down_count = int((significant['direction'] == 'down').sum())

        self.logger.info("DEG Analysis Complete:")
        self.logger.info(f"  Total genes analyzed: {len(ordered)}")
        self.logger.info(f"  Significant DEGs (padj < {padj_cutoff}): {len(significant)}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")

        return {
            "method_used": "PyDESeq2",
            "input_genes": int(self.count_matrix.shape[0]),
            "total_genes": len(ordered),
            "na_padj_count": na_count,
            "deg_count": len(significant),
            "up_count": up_count,
            "down_count": down_count,
            "treatment": self.treatment,
            "reference": self.reference,
            "padj_cutoff": padj_cutoff,
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        for key in ["full_results", "significant_results", "normalized_counts",
                    "vst_counts", "size_factors", "dispersions"]:
            filepath = self.output_dir / self.outputs[key]
            if not filepath.exists():
                self.logger.error(f"Missing output file: {filepath.name}")
                return False

        full_df = pd.read_csv(self.output_dir / self.outputs["full_results"])
        sig_df = pd.read_csv(self.output_dir / self.outputs["significant_results"])

        padj = full_df['padj']
        tested = padj.dropna()
        if not tested.is_monotonic_increasing:
            self.logger.error("Full results are not ordered by padj")
            return False
        if padj.isna().any() and padj.iloc[len(tested):].notna().any():
            self.logger.error("Missing padj values are not at the end of the results")
            return False

        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        if sig_df['padj'].isna().any():
            self.logger.error("NA values found in significant padj column")
            return False
        if (sig_df['padj'] >= self.config["padj_cutoff"]).any():
            self.logger.error("Significant results contain padj above cutoff")
            return False

        return True
