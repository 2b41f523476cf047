"""
Configuration classes for microbiome ASV workflows.

This module provides the YAML-backed ``Config`` object and one parameter
dataclass per processing step of the denoising pipeline and the downstream
analysis.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar, Union

import yaml


class AlphaMetric(Enum):
    """Enumeration of available within-sample diversity metrics."""
    OBSERVED = "observed_features"
    CHAO1 = "chao1"
    SHANNON = "shannon"
    SIMPSON = "simpson"
    INVERSE_SIMPSON = "inverse_simpson"
    FAITH_PD = "faith_pd"

    @property
    def requires_tree(self) -> bool:
        return self is AlphaMetric.FAITH_PD


class BetaMetric(Enum):
    """Enumeration of available between-sample dissimilarity metrics."""
    BRAY_CURTIS = "braycurtis"
    JACCARD = "jaccard"
    UNWEIGHTED_UNIFRAC = "unweighted_unifrac"
    WEIGHTED_UNIFRAC = "weighted_unifrac"

    @property
    def requires_tree(self) -> bool:
        return self in (
            BetaMetric.UNWEIGHTED_UNIFRAC,
            BetaMetric.WEIGHTED_UNIFRAC,
        )


class ClassificationMethod(Enum):
    """Enumeration of taxonomy assignment backends."""
    NATIVE = "native"
    QIIME = "qiime"


class Config:
    """Configuration class that loads YAML files and provides dot notation access."""

    def __init__(self, config_path: Union[str, Path]):
        """
        Initialize configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(self.config_path, 'r') as f:
            self._data = yaml.safe_load(f) or {}

        if not isinstance(self._data, dict):
            raise ValueError(
                f"Configuration root must be a mapping: {config_path}"
            )

        # Convert nested dictionaries to Config objects for dot notation
        self._convert_dicts()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Build a Config from an in-memory mapping (no file involved)."""
        config_obj = cls.__new__(cls)
        config_obj.config_path = None
        config_obj._data = dict(data)
        config_obj._convert_dicts()
        return config_obj

    def _convert_dicts(self):
        """Convert nested dictionaries to Config objects recursively."""
        for key, value in self._data.items():
            if isinstance(value, dict):
                setattr(self, key, self._dict_to_config(value))
            else:
                setattr(self, key, value)

    def _dict_to_config(self, data: Dict[str, Any]) -> 'Config':
        """Convert a dictionary to a Config object."""
        config_obj = Config.__new__(Config)  # Create without calling __init__
        config_obj.config_path = self.config_path
        config_obj._data = data

        for key, value in data.items():
            if isinstance(value, dict):
                setattr(config_obj, key, self._dict_to_config(value))
            else:
                setattr(config_obj, key, value)

        return config_obj

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value with optional default."""
        return getattr(self, key, default)

    def section(self, key: str) -> Dict[str, Any]:
        """Return a top-level section as a plain dict (empty if absent)."""
        value = self._data.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError(f"Configuration section '{key}' must be a mapping")
        return dict(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config back to dictionary."""
        return self._data.copy()

    def __getitem__(self, key: str) -> Any:
        """Allow dictionary-style access."""
        return getattr(self, key)

    def __contains__(self, key: str) -> bool:
        """Check if key exists in config."""
        return key in self._data

    def __repr__(self) -> str:
        return f"Config({self._data})"


# Parameter dataclasses

P = TypeVar("P")


def _params_from_section(
    cls: Type[P], section: Optional[Union[Config, Dict[str, Any]]]
) -> P:
    """Instantiate a parameter dataclass from a config section.

    Omitted keys keep their dataclass defaults; unknown keys are rejected so
    typos in the YAML file fail loudly.
    """
    if section is None:
        return cls()
    if isinstance(section, Config):
        section = section.to_dict()

    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(
            f"Unknown keys for {cls.__name__}: {unknown} (allowed: {sorted(known)})"
        )
    return cls(**section)


def _pair(value: Any, cast: Type) -> Tuple[Any, Any]:
    """Normalise a scalar or two-element sequence to a (forward, reverse) pair."""
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValueError(f"Expected a forward/reverse pair, got: {value}")
        return cast(value[0]), cast(value[1])
    return cast(value), cast(value)


@dataclass
class RunParams:
    """Run-wide settings shared by both stages."""
    name: str = "run"
    output_dir: str = "results"
    log_level: str = "INFO"
    threads: int = 1
    seed: int = 100
    compress: bool = False

    @classmethod
    def from_config(cls, section=None) -> "RunParams":
        return _params_from_section(cls, section)


@dataclass
class ReadParams:
    """Where raw reads live and how forward/reverse files are named."""
    input_dir: str = "data/raw"
    forward_suffix: str = "_R1_001.fastq.gz"
    reverse_suffix: str = "_R2_001.fastq.gz"
    quality_profile_samples: int = 2
    quality_profile_reads: int = 10000
    metadata: Optional[str] = None

    @classmethod
    def from_config(cls, section=None) -> "ReadParams":
        return _params_from_section(cls, section)


@dataclass
class FilterParams:
    """Filter-and-trim parameters; pairs are (forward, reverse)."""
    trunc_len: Tuple[int, int] = (0, 0)
    trim_left: Tuple[int, int] = (0, 0)
    max_ee: Tuple[float, float] = (2.0, 2.0)
    trunc_q: int = 2
    max_n: int = 0
    min_len: int = 20
    chunk_size: int = 100000

    def __post_init__(self):
        self.trunc_len = _pair(self.trunc_len, int)
        self.trim_left = _pair(self.trim_left, int)
        self.max_ee = _pair(self.max_ee, float)
        if min(self.trunc_len) < 0 or min(self.trim_left) < 0:
            raise ValueError("trunc_len and trim_left must be non-negative")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

    @classmethod
    def from_config(cls, section=None) -> "FilterParams":
        return _params_from_section(cls, section)


@dataclass
class DenoiseParams:
    """Parameters forwarded to DADA2 (QIIME 2 ``dada2 denoise-paired``)."""
    chimera_method: str = "consensus"
    pooling_method: str = "independent"
    min_overlap: int = 12
    min_fold_parent_over_abundance: float = 1.0
    n_reads_learn: int = 1000000

    def __post_init__(self):
        if self.chimera_method not in ("consensus", "pooled", "none"):
            raise ValueError(f"Unknown chimera_method: {self.chimera_method}")
        if self.pooling_method not in ("independent", "pseudo"):
            raise ValueError(f"Unknown pooling_method: {self.pooling_method}")

    @classmethod
    def from_config(cls, section=None) -> "DenoiseParams":
        return _params_from_section(cls, section)


@dataclass
class ClassifierParams:
    """Taxonomy assignment settings."""
    method: str = ClassificationMethod.NATIVE.value
    reference_fasta: Optional[str] = None
    reference_taxonomy: Optional[str] = None
    classifier: Optional[str] = None
    species_reference: Optional[str] = None
    kmer_size: int = 8
    bootstraps: int = 100
    min_confidence: float = 0.5
    smoothing: float = 0.5
    n_features: Optional[int] = None

    def __post_init__(self):
        self.method = ClassificationMethod(self.method).value
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError("min_confidence must lie in [0, 1]")
        if self.kmer_size < 2:
            raise ValueError("kmer_size must be at least 2")
        if self.n_features is None:
            # one bucket per possible k-mer
            self.n_features = 4 ** self.kmer_size

    @classmethod
    def from_config(cls, section=None) -> "ClassifierParams":
        return _params_from_section(cls, section)


@dataclass
class PhylogenyParams:
    """Tree building switch (MAFFT + FastTree through QIIME 2)."""
    enabled: bool = True

    @classmethod
    def from_config(cls, section=None) -> "PhylogenyParams":
        return _params_from_section(cls, section)


@dataclass
class DifferentialParams:
    """Differential abundance settings (pydeseq2)."""
    rank: Optional[str] = None
    alpha: float = 0.01
    min_count: int = 10

    @classmethod
    def from_config(cls, section=None) -> "DifferentialParams":
        return _params_from_section(cls, section)


@dataclass
class AnalysisParams:
    """Downstream analysis settings.

    ``groups`` holds exactly two values of ``group_column``; the first is the
    reference level for fold changes.
    """
    dataset: Optional[str] = None
    metadata: Optional[str] = None
    group_column: str = "group"
    groups: List[str] = field(default_factory=list)
    output_dir: Optional[str] = None
    min_reads: int = 1000
    exclude_taxa: List[str] = field(
        default_factory=lambda: ["Chloroplast", "Mitochondria"]
    )
    rarefaction_depth: Optional[int] = None
    min_retained: float = 0.9
    alpha_metrics: List[str] = field(
        default_factory=lambda: [m.value for m in AlphaMetric]
    )
    beta_metrics: List[str] = field(
        default_factory=lambda: [m.value for m in BetaMetric]
    )
    permutations: int = 999
    composition_rank: str = "phylum"
    top_n_taxa: int = 15
    differential: DifferentialParams = field(default_factory=DifferentialParams)

    def __post_init__(self):
        if isinstance(self.differential, (dict, Config)):
            self.differential = DifferentialParams.from_config(self.differential)
        if self.groups and len(self.groups) != 2:
            raise ValueError(
                f"Exactly two groups are compared, got: {self.groups}"
            )
        self.groups = [str(g) for g in self.groups]
        # Validate metric names early
        self.alpha_metrics = [AlphaMetric(m).value for m in self.alpha_metrics]
        self.beta_metrics = [BetaMetric(m).value for m in self.beta_metrics]

    @classmethod
    def from_config(cls, section=None) -> "AnalysisParams":
        return _params_from_section(cls, section)
