"""
Sunflower DEG Pipeline - Test Configuration and Fixtures
"""
import json
import sys
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

PREFIX = "sunflower"


def _write_inputs(
    input_dir: Path,
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    prefix: str = PREFIX,
    config: dict = None
) -> Path:
    """Write a count matrix (genes x samples) and metadata in pipeline input format."""
    input_dir = Path(input_dir)
    input_dir.mkdir(parents=True, exist_ok=True)

    counts.rename_axis("gene_id").to_csv(input_dir / f"{prefix}_gene_counts.csv")
    metadata.to_csv(input_dir / f"{prefix}_sample_metadata.csv", index=False)

    if config is not None:
        with open(input_dir / "config.json", "w") as f:
            json.dump(config, f)

    return input_dir


@pytest.fixture
def write_inputs():
    """Return a helper that writes pipeline input files."""
    return _write_inputs


@pytest.fixture
def sample_count_matrix():
    """Generate a small synthetic count matrix for testing."""
    rng = np.random.default_rng(42)
    n_genes = 100
    n_samples = 10

    genes = [f"GENE{i}" for i in range(n_genes)]

    # 5 control, 5 treated
    samples = [f"CTRL_{i}" for i in range(5)] + [f"TRT_{i}" for i in range(5)]

    counts = rng.negative_binomial(n=10, p=0.05, size=(n_genes, n_samples))

    # First 10 genes up in treated, genes 10-20 down in treated
    counts[:10, 5:] = counts[:10, 5:] * 6
    counts[10:20, 5:] = counts[10:20, 5:] // 6 + 1

    df = pd.DataFrame(counts, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata():
    """Generate matching metadata for sample_count_matrix."""
    samples = [f"CTRL_{i}" for i in range(5)] + [f"TRT_{i}" for i in range(5)]

    return pd.DataFrame({
        "sample_id": samples,
        "condition": ["control"] * 5 + ["treated"] * 5,
        "batch": ["batch1"] * 10
    })


@pytest.fixture
def five_gene_counts():
    """2 conditions x 3 samples; 3 strongly differential genes, 2 flat ones."""
    samples = ["ctrl_1", "ctrl_2", "ctrl_3", "trt_1", "trt_2", "trt_3"]
    data = {
        "DE_UP_1":   [100, 120, 90, 1000, 1150, 950],
        "DE_UP_2":   [50, 60, 45, 800, 760, 900],
        "DE_DOWN_1": [2000, 1800, 2200, 150, 170, 140],
        "FLAT_1":    [500, 520, 480, 510, 490, 505],
        "FLAT_2":    [300, 310, 295, 305, 290, 300],
    }
    df = pd.DataFrame.from_dict(data, orient="index", columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def five_gene_metadata():
    return pd.DataFrame({
        "sample_id": ["ctrl_1", "ctrl_2", "ctrl_3", "trt_1", "trt_2", "trt_3"],
        "condition": ["control"] * 3 + ["treated"] * 3
    })


@pytest.fixture
def sample_deg_results():
    """Generate DESeq2-style results, as written by the DEG agent."""
    rng = np.random.default_rng(42)
    n_genes = 50

    padj = rng.uniform(0, 0.2, n_genes)
    padj[-5:] = np.nan

    df = pd.DataFrame({
        "gene_id": [f"GENE{i}" for i in range(n_genes)],
        "baseMean": rng.uniform(10, 10000, n_genes),
        "log2FoldChange": rng.normal(0, 2, n_genes),
        "lfcSE": rng.uniform(0.1, 0.5, n_genes),
        "stat": rng.normal(0, 3, n_genes),
        "pvalue": padj / 2,
        "padj": padj
    })
    return df.sort_values("padj", na_position="last").reset_index(drop=True)
