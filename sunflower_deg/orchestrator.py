"""
Sunflower DEG Pipeline Orchestrator

Runs the differential expression stages in order and records the run.

Usage:
    from sunflower_deg import DEPipeline

    pipeline = DEPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"contrast": ["treated", "control"]}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent1_deg")
    pipeline.run_from("agent2_visualization")  # Re-plot from existing DEG outputs

Stages:
    agent1_deg            load -> validate -> filter -> fit -> VST -> Wald test -> CSVs
    agent2_visualization  PCA, sample distances, MA, volcano, top-gene heatmap
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from . import config as settings
from .agents import DEGAgent, VisualizationAgent
from .utils.base_agent import LOG_FORMAT


class DEPipeline:
    """Orchestrator for the differential expression pipeline."""

    AGENT_ORDER = [
        "agent1_deg",
        "agent2_visualization"
    ]

    AGENT_CLASSES = {
        "agent1_deg": DEGAgent,
        "agent2_visualization": VisualizationAgent
    }

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        # Explicit config wins over config.json in the input directory
        self.config = {**self._load_config_file(), **(config or {})}

        run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.execution_state = {
            "run_id": run_id,
            "status": "pending",
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "errors": {},
            "agent_results": {}
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("sunflower_deg")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        log_file = self.output_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _load_config_file(self) -> Dict[str, Any]:
        """Read optional config.json from the input directory."""
        config_file = self.input_dir / settings.CONFIG_FILENAME
        if not config_file.exists():
            return {}

        with open(config_file, 'r', encoding='utf-8') as f:
            file_config = json.load(f)

        if not isinstance(file_config, dict):
            raise ValueError(f"{config_file} must contain a JSON object")

        self.logger.info(f"Loaded {config_file.name}: {sorted(file_config)}")
        return file_config

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        # First agent reads the raw inputs; later agents read earlier outputs
        if agent_name == self.AGENT_ORDER[0]:
            return self.input_dir
        return self.output_dir

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        agent_config = {**self.config, **(config_override or {})}

        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            input_dir=self._get_agent_input_dir(agent_name),
            output_dir=self.output_dir,
            config=agent_config
        )

        try:
            results = agent.execute()
        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.execution_state["errors"][agent_name] = str(e)
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        return results

    def _run_agents(self, agents_to_run: List[str]) -> Dict[str, Any]:
        self.execution_state["start_time"] = datetime.now().isoformat()
        self.logger.info(f"Agents to run: {agents_to_run}")

        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

        failed = bool(self.execution_state["failed_agents"])
        self.execution_state["status"] = "failed" if failed else "completed"
        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Pipeline {self.execution_state['status']}")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.output_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.logger.info("Starting sunflower DEG pipeline")
        self.logger.info(f"Input: {self.input_dir}")

        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            agents_to_run = self.AGENT_ORDER[:self.AGENT_ORDER.index(stop_after) + 1]
        else:
            agents_to_run = self.AGENT_ORDER

        return self._run_agents(agents_to_run)

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"Resuming from {agent_name}")
        return self._run_agents(self.AGENT_ORDER[self.AGENT_ORDER.index(agent_name):])

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.output_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(
    output_dir: Path,
    n_genes: int = 1000,
    n_samples: int = 6,
    prefix: str = settings.DATASET_PREFIX,
    seed: int = 42
) -> None:
    """Create a synthetic two-condition dataset in the pipeline's input format."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(seed)

    genes = [f'HanXRQChr{(i % 17) + 1:02d}g{i:07d}' for i in range(n_genes)]

    n_treated = n_samples // 2
    n_control = n_samples - n_treated
    samples = [f'control_{i+1}' for i in range(n_control)] + \
              [f'treated_{i+1}' for i in range(n_treated)]

    # Negative binomial counts around a per-gene mean
    gene_means = rng.lognormal(mean=5, sigma=1.5, size=n_genes)
    dispersion = 0.1
    fold_changes = np.ones(n_genes)

    # 10% of genes differential, half up, half down
    n_de = max(1, n_genes // 10)
    de_idx = rng.choice(n_genes, size=n_de, replace=False)
    fold_changes[de_idx[: n_de // 2]] = rng.uniform(3, 8, size=n_de // 2)
    fold_changes[de_idx[n_de // 2:]] = 1 / rng.uniform(3, 8, size=n_de - n_de // 2)

    counts = np.zeros((n_genes, n_samples), dtype=int)
    for j, sample in enumerate(samples):
        mu = gene_means * (fold_changes if sample.startswith('treated') else 1)
        p = 1 / (1 + mu * dispersion)
        counts[:, j] = rng.negative_binomial(1 / dispersion, p)

    count_df = pd.DataFrame(counts, columns=samples)
    count_df.insert(0, 'gene_id', genes)

    meta_df = pd.DataFrame({
        'sample_id': samples,
        'condition': ['control'] * n_control + ['treated'] * n_treated
    })

    inputs = settings.input_filenames(prefix)
    count_df.to_csv(output_dir / inputs["counts"], index=False)
    meta_df.to_csv(output_dir / inputs["metadata"], index=False)

    config = {
        "dataset_prefix": prefix,
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "min_count_filter": 10
    }
    with open(output_dir / settings.CONFIG_FILENAME, 'w') as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - {inputs['counts']}: {len(genes)} genes x {len(samples)} samples")
    print(f"  - {inputs['metadata']}: {len(samples)} samples")
    print(f"  - {settings.CONFIG_FILENAME}: analysis configuration")


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sunflower RNA-seq differential expression pipeline")
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Output directory (required unless --create-sample)")
    parser.add_argument("--prefix", help=f"Dataset file prefix (default: {settings.DATASET_PREFIX})")
    parser.add_argument("--condition-column", help="Metadata column used as design factor")
    parser.add_argument("--contrast", nargs=2, metavar=("TREATMENT", "REFERENCE"),
                        help="Conditions to compare")
    parser.add_argument("--min-count", type=int, help="Minimum total count per gene")
    parser.add_argument("--padj-cutoff", type=float, help="Adjusted p-value cutoff")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--agent", help="Run specific agent only")
    parser.add_argument("--from-agent", help="Resume from specific agent")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input), prefix=args.prefix or settings.DATASET_PREFIX)
        return 0

    if not args.output:
        print("error: --output is required", file=sys.stderr)
        return 2

    overrides = {
        "dataset_prefix": args.prefix,
        "condition_column": args.condition_column,
        "contrast": args.contrast,
        "min_count_filter": args.min_count,
        "padj_cutoff": args.padj_cutoff,
    }
    config = {k: v for k, v in overrides.items() if v is not None}

    pipeline = DEPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config
    )

    if args.agent:
        pipeline.run_agent(args.agent)
        return 0
    if args.from_agent:
        state = pipeline.run_from(args.from_agent)
    else:
        state = pipeline.run()

    return 0 if state["status"] == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
