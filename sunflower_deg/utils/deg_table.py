"""
Count-matrix and results-table helpers.

These are the only decisions the pipeline makes on its own; everything
statistical is delegated to PyDESeq2.
"""

from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd


RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


class SampleMismatchError(ValueError):
    """Count-matrix columns are not all described in the sample metadata."""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(str(s) for s in missing)
        preview = ", ".join(self.missing[:10])
        if len(self.missing) > 10:
            preview += f", ... ({len(self.missing)} total)"
        super().__init__(
            "Sample names in the count matrix do not match the sample metadata. "
            f"Missing from metadata: {preview}"
        )


def check_sample_correspondence(counts: pd.DataFrame, metadata: pd.DataFrame) -> List[str]:
    """Raise SampleMismatchError unless every count column has a metadata row.

    Returns the samples in the metadata that have no count column (allowed,
    but worth logging).
    """
    count_samples = set(map(str, counts.columns))
    meta_samples = set(map(str, metadata.index))

    missing = count_samples - meta_samples
    if missing:
        raise SampleMismatchError(missing)

    return sorted(meta_samples - count_samples)


def filter_low_count_genes(counts: pd.DataFrame, min_count: int = 10) -> pd.DataFrame:
    """Keep genes whose total count across samples is >= min_count."""
    return counts.loc[counts.sum(axis=1) >= min_count]


def resolve_contrast(
    conditions: Iterable[str],
    contrast: Optional[Tuple[str, str]] = None
) -> Tuple[str, str]:
    """Return (treatment, reference) for the condition factor.

    Without an explicit contrast the reference is the first level in sorted
    order and the treatment is the last one.
    """
    levels = sorted(set(map(str, conditions)))
    if len(levels) < 2:
        raise ValueError(f"Need at least two conditions, found: {levels}")

    if contrast is None:
        return levels[-1], levels[0]

    if len(contrast) != 2:
        raise ValueError(f"Contrast must be [treatment, reference], got: {contrast}")
    treatment, reference = map(str, contrast)
    unknown = [c for c in (treatment, reference) if c not in levels]
    if unknown:
        raise ValueError(f"Contrast levels {unknown} not in conditions {levels}")
    if treatment == reference:
        raise ValueError(f"Contrast compares '{treatment}' with itself")
    return treatment, reference


def order_by_padj(results: pd.DataFrame) -> pd.DataFrame:
    """Sort by ascending adjusted p-value; missing padj goes last."""
    return results.sort_values('padj', ascending=True, na_position='last', kind='mergesort')


def significant_subset(results: pd.DataFrame, padj_cutoff: float = 0.05) -> pd.DataFrame:
    """Rows with padj strictly below the cutoff, in the input order."""
    return results.loc[results['padj'] < padj_cutoff]


def add_direction(results: pd.DataFrame) -> pd.DataFrame:
    """Label each gene up/down by the sign of its fold change."""
    results = results.copy()
    results['direction'] = np.where(results['log2FoldChange'] > 0, 'up', 'down')
    return results
