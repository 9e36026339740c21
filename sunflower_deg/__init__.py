"""
Sunflower RNA-seq Differential Expression Pipeline

A two-stage pipeline built on PyDESeq2:
1. DEG Analysis (load, validate, filter, fit, VST, Wald test)
2. Visualization (PCA, sample distances, MA, volcano, top-gene heatmap)

Each agent has clear input/output files and can be run independently.
"""

from .orchestrator import DEPipeline, create_sample_data

__version__ = "1.0.0"

__all__ = ["DEPipeline", "create_sample_data"]
