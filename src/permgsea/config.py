"""Configuration handling for the permutation FDR pipeline."""

import copy
import tomli
import tomli_w
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from .errors import InvalidInputError


class PipelineConfig:
    """Configuration class for the permutation FDR pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        self._parse(config)

    @classmethod
    def from_dict(cls, config: Dict[str, Any], config_path: Optional[str] = None) -> "PipelineConfig":
        """Build a configuration from an already loaded dictionary.

        Args:
            config: Configuration dictionary with the same layout as the TOML file
            config_path: Optional path the dictionary came from

        Returns:
            PipelineConfig instance
        """
        instance = cls.__new__(cls)
        instance.config_path = config_path
        instance._parse(copy.deepcopy(config))
        return instance

    def _parse(self, config: Dict[str, Any]) -> None:
        self.config = config

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})
        required_input_files = ['counts_file', 'classes_file', 'gene_sets_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})

        # The two phenotype classes compared in every run
        missing_classes = [key for key in ('test_class', 'reference_class') if key not in self.analysis_params]
        if missing_classes:
            raise ValueError(f"Missing comparison classes in [analysis]: {', '.join(missing_classes)}")
        self.test_class = str(self.analysis_params['test_class'])
        self.reference_class = str(self.analysis_params['reference_class'])
        if self.test_class == self.reference_class:
            raise InvalidInputError(
                f"test_class and reference_class must differ (both are '{self.test_class}')"
            )

        self.min_cpm = float(self.analysis_params.get("min_cpm", 1.0))
        self.min_samples = self.analysis_params.get("min_samples", None)
        self.num_threads = self.analysis_params.get("num_threads", None)
        if self.num_threads is not None and int(self.num_threads) < 1:
            raise ValueError(f"analysis.num_threads must be at least 1, got {self.num_threads}")
        self.seed = self.analysis_params.get("seed", None)
        self.gene_id_delimiter = self.analysis_params.get("gene_id_delimiter", "|")

        self.enrichment_params = self.config.get("enrichment", {})
        self.trial_params = self.config.get("trials", {})
        self.fdr_params = self.config.get("fdr", {})
        self.saturation_params = self.config.get("saturation", {})

        self.n_trials = int(self.trial_params.get("number", 1000))
        if self.n_trials < 1:
            raise ValueError(f"trials.number must be at least 1, got {self.n_trials}")

        self.real_permutations = int(self.enrichment_params.get("real_permutations", 1000))
        self.trial_permutations = int(self.enrichment_params.get("trial_permutations", 1))
        # The engine only reports NES with at least one internal permutation
        if self.trial_permutations < 1 or self.real_permutations < 1:
            raise ValueError("enrichment permutation counts must be at least 1")

        self.fdr_threshold = float(self.fdr_params.get("threshold", 0.05))
        if not 0 < self.fdr_threshold <= 1:
            raise ValueError(f"fdr.threshold must be in (0, 1], got {self.fdr_threshold}")
        self.saturation_step = int(self.saturation_params.get("step", 100))
        if self.saturation_step < 1:
            raise ValueError(f"saturation.step must be at least 1, got {self.saturation_step}")

    @property
    def run_trials(self) -> bool:
        return bool(self.trial_params.get("run", True))

    @property
    def run_saturation(self) -> bool:
        return bool(self.saturation_params.get("run", True))

    @property
    def keep_trial_artifacts(self) -> bool:
        return bool(self.trial_params.get("keep_artifacts", True))

    @property
    def save_intermediate(self) -> bool:
        return bool(self.output_config.get("save_intermediate", False))

    def get_enrichment_options(self) -> Dict[str, Any]:
        """Get the enrichment tool options shared by the real run and the trials.

        Returns:
            Dictionary of keyword arguments for ``EnrichmentSettings``
            (without the permutation count, which differs per run type)
        """
        return {
            "gsea_cli": self.enrichment_params.get("gsea_cli", "gsea-cli.sh"),
            "gene_sets_file": str(self.input_files["gene_sets_file"]),
            "set_min": int(self.enrichment_params.get("set_min", 15)),
            "set_max": int(self.enrichment_params.get("set_max", 500)),
            "scoring_scheme": self.enrichment_params.get("scoring_scheme", "weighted"),
            "seed": int(self.enrichment_params.get("seed", 149)),
            "timeout": self.enrichment_params.get("timeout", None),
            "extra_args": tuple(self.enrichment_params.get("extra_args", [])),
        }

    def get_saturation_sizes(self, n_trials: Optional[int] = None) -> List[int]:
        """Get the trial-prefix sizes used by the saturation analysis.

        Args:
            n_trials: Total trial count (defaults to the configured number)

        Returns:
            Increasing list of prefix sizes ending at ``n_trials``
        """
        n_trials = self.n_trials if n_trials is None else n_trials
        sizes = self.saturation_params.get("sizes")
        if sizes:
            return sorted({int(size) for size in sizes if 0 < int(size) <= n_trials})

        step = max(1, self.saturation_step)
        sizes = list(range(step, n_trials + 1, step))
        if not sizes or sizes[-1] != n_trials:
            sizes.append(n_trials)
        return sizes

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("directory", self.output_config.get("output_dir", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
