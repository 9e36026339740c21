"""Configuration defaults for the sunflower DEG pipeline."""
import os
from dotenv import load_dotenv

load_dotenv()

# Dataset naming: inputs are <prefix>_gene_counts.csv / <prefix>_sample_metadata.csv
DATASET_PREFIX = os.getenv("SUNFLOWER_DATASET_PREFIX", "sunflower")

# Design
CONDITION_COLUMN = os.getenv("SUNFLOWER_CONDITION_COLUMN", "condition")

# Thresholds
MIN_COUNT_FILTER = int(os.getenv("SUNFLOWER_MIN_COUNT", "10"))
PADJ_CUTOFF = float(os.getenv("SUNFLOWER_PADJ_CUTOFF", "0.05"))
LOG2FC_CUTOFF = float(os.getenv("SUNFLOWER_LOG2FC_CUTOFF", "1.0"))

# PyDESeq2
N_CPUS = int(os.getenv("SUNFLOWER_N_CPUS", "1"))

# Optional per-run overrides in the input directory
CONFIG_FILENAME = "config.json"


def input_filenames(prefix: str) -> dict:
    """Input file names for a dataset prefix."""
    return {
        "counts": f"{prefix}_gene_counts.csv",
        "metadata": f"{prefix}_sample_metadata.csv",
    }


def output_filenames(prefix: str) -> dict:
    """Output file names for a dataset prefix."""
    return {
        # DEG agent
        "full_results": f"{prefix}_full_differential_expression_results.csv",
        "significant_results": f"{prefix}_significant_differential_expression_results.csv",
        "normalized_counts": f"{prefix}_normalized_counts.csv",
        "vst_counts": f"{prefix}_vst_counts.csv",
        "size_factors": f"{prefix}_size_factors.csv",
        "dispersions": f"{prefix}_dispersions.csv",
        # Visualization agent
        "pca_plot": f"{prefix}_pca_plot.png",
        "sample_distance_heatmap": f"{prefix}_sample_distance_heatmap.png",
        "ma_plot": f"{prefix}_ma_plot.png",
        "volcano_plot": f"{prefix}_volcano_plot.png",
        "top_genes_heatmap": f"{prefix}_top_genes_heatmap.png",
        "dispersion_plot": f"{prefix}_dispersion_plot.png",
    }
