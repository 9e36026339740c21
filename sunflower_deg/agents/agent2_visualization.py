"""
Agent 2: Visualization

Generates the diagnostic figures from the DEG agent outputs.

Input:
- <prefix>_full_differential_expression_results.csv: From Agent 1
- <prefix>_vst_counts.csv: From Agent 1
- <prefix>_size_factors.csv: From Agent 1 (sample -> condition)
- <prefix>_dispersions.csv: From Agent 1

Output:
- <prefix>_pca_plot.png
- <prefix>_sample_distance_heatmap.png
- <prefix>_ma_plot.png
- <prefix>_volcano_plot.png
- <prefix>_top_genes_heatmap.png
- <prefix>_dispersion_plot.png
- meta_agent2_visualization.json
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from .. import config as settings
from ..utils.base_agent import BaseAgent


class VisualizationAgent(BaseAgent):
    """Agent for generating DEG diagnostic figures."""

    # Figures the pipeline promises; the rest are best-effort
    REQUIRED_FIGURES = ["pca_plot", "volcano_plot", "top_genes_heatmap"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "dataset_prefix": settings.DATASET_PREFIX,
            "condition_column": settings.CONDITION_COLUMN,
            "padj_cutoff": settings.PADJ_CUTOFF,
            "log2fc_cutoff": settings.LOG2FC_CUTOFF,
            "figure_format": ["png"],
            "dpi": 150,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "distance_palette": "Blues_r",
            "condition_palette": "Set2",
            "figsize": {
                "pca": (8, 6),
                "distance": (8, 8),
                "ma": (9, 6),
                "volcano": (10, 8),
                "heatmap": (10, 10),
                "dispersion": (8, 6)
            },
            "pca_top_genes": 500,
            "top_genes_heatmap": 20,
            "label_top_genes": 10
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_visualization", input_dir, output_dir, merged_config)

        self.outputs = settings.output_filenames(self.config["dataset_prefix"])

        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 11
        plt.rcParams['axes.labelsize'] = 12
        plt.rcParams['axes.titlesize'] = 14

    def validate_inputs(self) -> bool:
        """Validate input files."""
        self.deg_all = self.load_csv(self.outputs["full_results"])
        self.vst_counts = self.load_csv(self.outputs["vst_counts"], index_col=0)

        # Numeric gene IDs (e.g. Entrez) are parsed as integers on reload
        self.deg_all["gene_id"] = self.deg_all["gene_id"].astype(str)
        self.vst_counts.index = self.vst_counts.index.astype(str)
        self.samples = self.load_csv(self.outputs["size_factors"])
        self.dispersions = self.load_csv(self.outputs["dispersions"], required=False)

        condition_col = self.config["condition_column"]
        if condition_col not in self.samples.columns:
            self.logger.error(f"Condition column '{condition_col}' not in sample table")
            return False

        self.vst_counts.columns = self.vst_counts.columns.astype(str)
        self.conditions = (
            self.samples.assign(sample_id=self.samples["sample_id"].astype(str))
            .set_index("sample_id")[condition_col].astype(str)
            .reindex(self.vst_counts.columns)
        )
        if self.conditions.isna().any():
            missing = self.conditions[self.conditions.isna()].index.tolist()
            self.logger.error(f"Samples without a condition: {missing}")
            return False

        if len(self.deg_all) == 0:
            self.logger.error("No DEG results found")
            return False

        return True

    def _condition_colors(self) -> Dict[str, Any]:
        levels = sorted(self.conditions.unique())
        palette = sns.color_palette(self.config["condition_palette"], len(levels))
        return dict(zip(levels, palette))

    def _save_figure(self, fig: plt.Figure, key: str) -> List[str]:
        """Save figure in every configured format."""
        saved_files = []
        stem = Path(self.outputs[key]).stem
        for fmt in self.config["figure_format"]:
            filepath = self.output_dir / f"{stem}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _plot_pca(self) -> Optional[List[str]]:
        """PCA of the most variable VST genes, coloured by condition."""
        self.logger.info("Generating PCA plot...")

        n_top = min(self.config["pca_top_genes"], len(self.vst_counts))
        top_var = self.vst_counts.var(axis=1).sort_values(ascending=False).index[:n_top]
        expr_t = self.vst_counts.loc[top_var].T

        n_components = min(2, expr_t.shape[0], expr_t.shape[1])
        if n_components < 2:
            self.logger.warning("Skipping PCA - need at least 2 samples and 2 genes")
            return None

        pca = PCA(n_components=2)
        pca_result = pca.fit_transform(expr_t.values)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])
        colors = self._condition_colors()
        for condition, color in colors.items():
            mask = (self.conditions == condition).values
            ax.scatter(pca_result[mask, 0], pca_result[mask, 1], s=100, alpha=0.8,
                       color=color, label=condition, edgecolor='black', linewidth=0.5)

        for i, sample in enumerate(expr_t.index):
            ax.annotate(sample, (pca_result[i, 0], pca_result[i, 1]),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
        ax.set_title(f'PCA: top {n_top} variable genes (VST)')
        ax.legend(title=self.config["condition_column"])

        ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
        ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)

        return self._save_figure(fig, "pca_plot")

    def _plot_sample_distances(self) -> Optional[List[str]]:
        """Euclidean sample-to-sample distances on VST counts, clustered."""
        self.logger.info("Generating sample distance heatmap...")

        samples = self.vst_counts.columns
        if len(samples) < 2:
            self.logger.warning("Skipping sample distances - need at least 2 samples")
            return None

        dists = pdist(self.vst_counts.T.values, metric='euclidean')
        dist_df = pd.DataFrame(squareform(dists), index=samples, columns=samples)
        clustering = linkage(dists, method='complete')

        colors = self._condition_colors()
        row_colors = self.conditions.map(colors)

        g = sns.clustermap(
            dist_df,
            row_linkage=clustering,
            col_linkage=clustering,
            cmap=self.config["distance_palette"],
            row_colors=row_colors,
            figsize=self.config["figsize"]["distance"],
            cbar_kws={'label': 'Euclidean distance'},
        )
        g.figure.suptitle('Sample-to-sample distances (VST)', y=1.02)

        return self._save_figure(g.figure, "sample_distance_heatmap")

    def _plot_ma(self) -> Optional[List[str]]:
        """Mean expression vs log2 fold change."""
        self.logger.info("Generating MA plot...")

        df = self.deg_all[self.deg_all['baseMean'] > 0].copy()
        significant = df['padj'] < self.config["padj_cutoff"]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])
        ax.scatter(df.loc[~significant, 'baseMean'], df.loc[~significant, 'log2FoldChange'],
                   c='gray', alpha=0.5, s=12, label='Not Significant')
        ax.scatter(df.loc[significant, 'baseMean'], df.loc[significant, 'log2FoldChange'],
                   c='#E74C3C', alpha=0.8, s=16,
                   label=f'padj < {self.config["padj_cutoff"]}')

        ax.set_xscale('log')
        ax.axhline(y=0, color='black', linewidth=0.8)
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('log2 Fold Change')
        ax.set_title('MA Plot')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "ma_plot")

    def _plot_volcano(self) -> Optional[List[str]]:
        """Generate volcano plot."""
        self.logger.info("Generating volcano plot...")

        df = self.deg_all.dropna(subset=['padj']).copy()
        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        passes_p = df['padj'] < padj_cutoff
        passes_fc = df['log2FoldChange'].abs() > log2fc_cutoff

        df['significance'] = 'NS'
        df.loc[passes_fc & ~passes_p, 'significance'] = 'Log2 FC'
        df.loc[passes_p & ~passes_fc, 'significance'] = 'p-value'
        df.loc[passes_p & passes_fc, 'significance'] = 'p-value and log2 FC'

        colors = {'NS': 'grey', 'Log2 FC': 'forestgreen',
                  'p-value': 'royalblue', 'p-value and log2 FC': '#CD0000'}

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])

        for sig, color in colors.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['log2FoldChange'], subset['neg_log10_padj'],
                       c=color, alpha=0.7, s=20,
                       label=f'{sig} ({len(subset)})')

        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        # Results are already ordered by padj
        for _, row in df[passes_p].head(self.config["label_top_genes"]).iterrows():
            ax.annotate(row['gene_id'], (row['log2FoldChange'], row['neg_log10_padj']),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title('Volcano Plot: Differential Expression')
        ax.legend(loc='upper right', fontsize=9)

        return self._save_figure(fig, "volcano_plot")

    def _plot_top_genes_heatmap(self) -> Optional[List[str]]:
        """Row-scaled VST heatmap of the genes with the smallest padj."""
        self.logger.info("Generating top genes heatmap...")

        ranked = self.deg_all.dropna(subset=['padj'])
        n_genes = min(self.config["top_genes_heatmap"], len(ranked))
        top_genes = [g for g in ranked['gene_id'].astype(str).head(n_genes)
                     if g in self.vst_counts.index]

        if len(top_genes) == 0:
            self.logger.warning("No matching genes for heatmap")
            return None

        expr_df = self.vst_counts.loc[top_genes]
        row_std = expr_df.std(axis=1).replace(0, np.nan)
        expr_zscore = expr_df.sub(expr_df.mean(axis=1), axis=0).div(row_std, axis=0).fillna(0)

        colors = self._condition_colors()
        g = sns.clustermap(
            expr_zscore,
            cmap=self.config["color_palette"],
            center=0,
            row_cluster=len(top_genes) > 1,
            col_cluster=expr_zscore.shape[1] > 1,
            col_colors=self.conditions.map(colors),
            yticklabels=True if len(top_genes) <= 50 else False,
            xticklabels=True,
            figsize=self.config["figsize"]["heatmap"],
            cbar_kws={'label': 'Z-score'},
        )
        g.figure.suptitle(f'Top {len(top_genes)} genes by adjusted p-value', y=1.02)

        return self._save_figure(g.figure, "top_genes_heatmap")

    def _plot_dispersions(self) -> Optional[List[str]]:
        """Gene-wise, fitted and final dispersion estimates."""
        if self.dispersions is None or len(self.dispersions) == 0:
            self.logger.warning("Skipping dispersion plot - no dispersion estimates")
            return None

        self.logger.info("Generating dispersion plot...")

        df = self.dispersions[self.dispersions['baseMean'] > 0].sort_values('baseMean')

        fig, ax = plt.subplots(figsize=self.config["figsize"]["dispersion"])
        ax.scatter(df['baseMean'], df['genewise_dispersion'], c='black', s=10,
                   alpha=0.6, label='gene-est')
        ax.scatter(df['baseMean'], df['dispersion'], c='#3498DB', s=10,
                   alpha=0.6, label='final')
        ax.plot(df['baseMean'], df['fitted_dispersion'], c='#E74C3C', label='fitted')

        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('Dispersion')
        ax.set_title('Dispersion Estimates')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "dispersion_plot")

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated_figures = []
        failed_figures = []

        figure_functions = [
            ("pca_plot", self._plot_pca),
            ("sample_distance_heatmap", self._plot_sample_distances),
            ("ma_plot", self._plot_ma),
            ("volcano_plot", self._plot_volcano),
            ("top_genes_heatmap", self._plot_top_genes_heatmap),
            ("dispersion_plot", self._plot_dispersions)
        ]

        for name, func in figure_functions:
            try:
                result = func()
                if result:
                    generated_figures.extend(result)
                else:
                    failed_figures.append(name)
            except Exception as e:
                self.logger.error(f"Error generating {name}: {e}")
                failed_figures.append(name)
                self.errors.append(f"{name}: {e}")
            finally:
                plt.close('all')

        self.logger.info("Visualization Complete:")
        self.logger.info(f"  Generated: {len(generated_figures)} files")
        self.logger.info(f"  Failed/Skipped: {len(failed_figures)}")

        return {
            "figures_generated": generated_figures,
            "failed_figures": failed_figures,
            "total_generated": len(generated_figures)
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if "png" not in self.config["figure_format"]:
            return True

        for key in self.REQUIRED_FIGURES:
            filepath = self.output_dir / self.outputs[key]
            if not filepath.exists() or filepath.stat().st_size == 0:
                self.logger.error(f"Missing figure: {filepath.name}")
                return False

        return True
