"""
Sunflower DEG Pipeline Agents

Each agent handles one step of the analysis:
- Agent 1: DEG Analysis (PyDESeq2)
- Agent 2: Visualization
"""

from .agent1_deg import DEGAgent
from .agent2_visualization import VisualizationAgent

__all__ = [
    "DEGAgent",
    "VisualizationAgent"
]
