"""Utility modules for the sunflower DEG pipeline."""

from .base_agent import BaseAgent
from .deg_table import (
    SampleMismatchError,
    check_sample_correspondence,
    filter_low_count_genes,
    order_by_padj,
    resolve_contrast,
    significant_subset,
)

__all__ = [
    "BaseAgent",
    "SampleMismatchError",
    "check_sample_correspondence",
    "filter_low_count_genes",
    "order_by_padj",
    "resolve_contrast",
    "significant_subset"
]
