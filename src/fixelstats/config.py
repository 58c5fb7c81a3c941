"""
Configuration handling for FixelStats.

This module handles:
- Configuration file parsing (YAML/JSON)
- Configuration validation
- Default values
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)


# Default configuration values
DEFAULT_CONFIG = {
    # Connectivity-based fixel enhancement parameters
    "cfe": {
        "dh": 0.1,  # Height increment used in the CFE integration
        "e": 2.0,  # Extent exponent
        "h": 3.0,  # Height exponent
        "c": 0.5,  # Connectivity exponent
    },

    # Fixel-fixel connectivity settings
    "connectivity": {
        "angle": 45.0,  # Max angle (degrees) between streamline tangent and fixel direction
        "threshold": 0.01,  # Fraction of shared streamlines needed to keep a connection
        "smoothing_fwhm": 10.0,  # Smoothing kernel FWHM in mm along fibre tracts (0 disables)
        "min_streamlines": 1000000,  # Below this count a warning is emitted
        "upsample_fraction": 0.333,  # Streamline sample spacing as a fraction of voxel size
    },

    # Design matrix built from a participants table (used when DESIGN is a .tsv/.csv file)
    "design": {
        "columns": [],  # Participants table columns to include as regressors
        "categorical_columns": None,  # Dummy-coded columns (None: auto-detect)
        "add_intercept": True,
        "standardize_continuous": True,
    },

    # Permutation testing settings
    "inference": {
        "n_permutations": 5000,
        "permutations_file": None,  # Pre-defined permutations (one per row)
        "nonstationary": False,  # Perform nonstationarity adjustment
        "n_permutations_nonstationary": 5000,
        "permutations_nonstationary_file": None,
        "notest": False,  # Only compute the default statistics
    },

    # Computational settings
    "n_jobs": 1,
    "random_state": None,
    "verbose": 1,
}


# (key, minimum, maximum) of the numeric options
_RANGES = [
    ("cfe.dh", 0.001, 1.0),
    ("cfe.e", 0.0, 100.0),
    ("cfe.h", 0.0, 100.0),
    ("cfe.c", 0.0, 100.0),
    ("connectivity.angle", 0.0, 90.0),
    ("connectivity.threshold", 0.0, 1.0),
    ("connectivity.smoothing_fwhm", 0.0, 200.0),
]


def _merge(base: Dict, updates: Dict, prefix: str = "") -> None:
    """Recursively merge ``updates`` into ``base``; sections merge key by key."""
    for key, value in updates.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge(current, value, f"{prefix}{key}.")
            continue
        if key not in base:
            logger.warning(f"Unknown configuration option: {prefix}{key}")
        base[key] = value


def _read_file(filepath: Path) -> Optional[Dict]:
    text = filepath.read_text()
    if filepath.suffix == ".json":
        return json.loads(text)
    # YAML is a superset of JSON, so other suffixes are read as YAML
    return yaml.safe_load(text)


class Config:
    """
    Configuration manager for FixelStats.

    Values are resolved in order: built-in defaults, then the configuration
    file, then keyword arguments (the command-line options).

    Parameters
    ----------
    config_file : str or Path, optional
        Path to configuration file (YAML or JSON).
    **kwargs
        Nested options overriding the defaults and the file, e.g.
        ``cfe={"dh": 0.2}``.

    Attributes
    ----------
    data : dict
        Resolved configuration.
    """

    def __init__(
        self,
        config_file: Optional[Union[str, Path]] = None,
        **kwargs,
    ):
        self.data = copy.deepcopy(DEFAULT_CONFIG)
        if config_file is not None:
            self.load_from_file(config_file)
        _merge(self.data, kwargs)
        self.validate()

    def load_from_file(self, filepath: Union[str, Path]) -> None:
        """Merge a YAML or JSON configuration file into the current values."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        logger.info(f"Loading configuration from: {filepath}")
        file_config = _read_file(filepath)
        if file_config is None:
            return
        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file {filepath} must contain a mapping of options")
        _merge(self.data, file_config)

    def save_to_file(self, filepath: Union[str, Path]) -> None:
        """
        Write the resolved configuration.

        A ``.yaml``/``.yml`` suffix gives YAML, anything else JSON.
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        if filepath.suffix in (".yaml", ".yml"):
            text = yaml.safe_dump(self.data, default_flow_style=False, sort_keys=False)
        else:
            text = json.dumps(self.data, indent=2)
        filepath.write_text(text)

        logger.info(f"Configuration saved to: {filepath}")

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises
        ------
        ValueError
            If configuration is invalid.
        """
        errors = []

        for key, low, high in _RANGES:
            value = self.get(key)
            if value is None or not isinstance(value, (int, float)) or isinstance(value, bool):
                errors.append(f"{key} must be a number, got {value!r}")
            elif not low <= value <= high:
                errors.append(f"{key} must be between {low} and {high}, got {value}")

        inference = self.data["inference"]
        for key in ("n_permutations", "n_permutations_nonstationary"):
            value = inference.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(f"inference.{key} must be a positive integer, got {value!r}")

        min_streamlines = self.get("connectivity.min_streamlines")
        if not isinstance(min_streamlines, int) or min_streamlines < 0:
            errors.append(f"connectivity.min_streamlines must be a non-negative integer, got {min_streamlines!r}")

        fraction = self.get("connectivity.upsample_fraction")
        if not isinstance(fraction, (int, float)) or not 0 < fraction <= 1:
            errors.append(f"connectivity.upsample_fraction must be in (0, 1], got {fraction!r}")

        n_jobs = self.data.get("n_jobs")
        if not isinstance(n_jobs, int) or n_jobs == 0:
            errors.append(f"n_jobs must be a non-zero integer, got {n_jobs!r}")

        if errors:
            raise ValueError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

    def _section(self, key: str, create: bool = False) -> Tuple[Optional[Dict], str]:
        *parents, leaf = key.split(".")
        section = self.data
        for name in parents:
            child = section.get(name)
            if not isinstance(child, dict):
                if not create:
                    return None, leaf
                child = section[name] = {}
            section = child
        return section, leaf

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``config.get("cfe.dh")``."""
        section, leaf = self._section(key)
        if section is None or leaf not in section:
            return default
        return section[leaf]

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted key, creating sections as needed."""
        section, leaf = self._section(key, create=True)
        section[leaf] = value

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def to_dict(self) -> Dict:
        """Return a copy of the configuration."""
        return copy.deepcopy(self.data)

    def summary(self) -> str:
        """
        Get a text summary of the configuration.

        Returns
        -------
        str
            Configuration summary.
        """
        lines = ["Configuration Summary", "=" * 40]

        cfe = self.data["cfe"]
        lines.append("\nCFE Parameters:")
        lines.append(f"  dh: {cfe['dh']}")
        lines.append(f"  E: {cfe['e']}")
        lines.append(f"  H: {cfe['h']}")
        lines.append(f"  C: {cfe['c']}")

        conn = self.data["connectivity"]
        lines.append("\nConnectivity Settings:")
        lines.append(f"  Angular threshold: {conn['angle']} deg")
        lines.append(f"  Connectivity threshold: {conn['threshold']}")
        lines.append(f"  Smoothing FWHM: {conn['smoothing_fwhm']} mm")

        inference = self.data["inference"]
        lines.append("\nInference Settings:")
        if inference["notest"]:
            lines.append("  Permutation testing: disabled")
        else:
            lines.append(f"  Permutations: {inference['n_permutations']}")
        lines.append(f"  Nonstationary adjustment: {inference['nonstationary']}")
        if inference["nonstationary"]:
            lines.append(f"  Nonstationarity permutations: {inference['n_permutations_nonstationary']}")

        return "\n".join(lines)


def load_config(
    config_file: Optional[Union[str, Path]] = None,
    **kwargs,
) -> Config:
    """
    Load configuration from file and/or keyword arguments.

    Parameters
    ----------
    config_file : str or Path, optional
        Path to configuration file.
    **kwargs
        Additional configuration options.

    Returns
    -------
    Config
        Configuration object.
    """
    return Config(config_file=config_file, **kwargs)


def create_default_config(output_path: Union[str, Path]) -> Path:
    """
    Create a documented default configuration file.

    Parameters
    ----------
    output_path : str or Path
        Path for the output configuration file.

    Returns
    -------
    Path
        Path to created configuration file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    template = """# ===============================================================================
# FixelStats Configuration File
# ===============================================================================
# Fixel-based analysis using connectivity-based fixel enhancement (CFE) and
# non-parametric permutation testing.
#
# USAGE:
#   fixelstats FIXEL_DIR SUBJECTS DESIGN CONTRAST TRACKS OUTPUT_DIR --config this_file.yaml
#
# CLI arguments take precedence over config file values.
# ===============================================================================

# -------------------------------------------------------------------------------
# CONNECTIVITY-BASED FIXEL ENHANCEMENT
# -------------------------------------------------------------------------------
cfe:
  # Height increment used in the CFE integration (0.001 - 1.0)
  # CLI equivalent: --cfe-dh
  dh: 0.1

  # Extent exponent (0 - 100)
  # CLI equivalent: --cfe-e
  e: 2.0

  # Height exponent (0 - 100)
  # CLI equivalent: --cfe-h
  h: 3.0

  # Connectivity exponent (0 - 100)
  # CLI equivalent: --cfe-c
  c: 0.5

# -------------------------------------------------------------------------------
# FIXEL-FIXEL CONNECTIVITY
# -------------------------------------------------------------------------------
connectivity:
  # Max angle (degrees) for assigning streamline tangents to fixels (0 - 90)
  # CLI equivalent: --angle
  angle: 45.0

  # Required fraction of shared streamlines to be included in the
  # neighbourhood of a fixel (0 - 1)
  # CLI equivalent: --connectivity
  threshold: 0.01

  # FWHM (mm) of the Gaussian kernel used to smooth fixel values along the
  # fibre tracts; 0 disables smoothing (0 - 200)
  # CLI equivalent: --smooth
  smoothing_fwhm: 10.0

  # A warning is emitted when the tractogram holds fewer streamlines
  min_streamlines: 1000000

  # Streamlines are resampled so that consecutive points are at most this
  # fraction of the smallest voxel size apart
  upsample_fraction: 0.333

# -------------------------------------------------------------------------------
# DESIGN MATRIX FROM A PARTICIPANTS TABLE
# -------------------------------------------------------------------------------
# Only used when DESIGN is a participants table (.tsv or .csv) with one row per
# subject, in the same order as the subject list. A numeric text file is used
# as-is.
design:
  # Columns to include as regressors
  # CLI equivalent: --regressors
  columns: []

  # Columns to dummy-code (null: auto-detect text or binary columns)
  # CLI equivalent: --categorical-regressors
  categorical_columns: null

  # Add an intercept column
  # CLI equivalent: --no-intercept disables
  add_intercept: true

  # Z-score continuous regressors
  standardize_continuous: true

# -------------------------------------------------------------------------------
# PERMUTATION TESTING
# -------------------------------------------------------------------------------
inference:
  # Number of permutations
  # CLI equivalent: --nperms
  n_permutations: 5000

  # Text file with one permutation (0-based subject indices) per row;
  # overrides n_permutations
  # CLI equivalent: --permutations
  permutations_file: null

  # Adjust for spatial nonstationarity of the enhanced statistic
  # CLI equivalent: --nonstationary
  nonstationary: false

  # Number of permutations used to estimate the empirical statistic
  # CLI equivalent: --nperms-nonstationary
  n_permutations_nonstationary: 5000

  # Permutations for the nonstationarity adjustment (ignored unless
  # nonstationary is true)
  # CLI equivalent: --permutations-nonstationary
  permutations_nonstationary_file: null

  # Only compute the default statistics, skip permutation testing
  # CLI equivalent: --notest
  notest: false

# -------------------------------------------------------------------------------
# COMPUTATION
# -------------------------------------------------------------------------------
# Number of parallel jobs (-1 uses all cores)
# CLI equivalent: --n-jobs
n_jobs: 1

# Random seed for reproducible permutations
# CLI equivalent: --random-state
random_state: null

# Verbosity: 0 = warnings only, 1 = info, 2 = debug
# CLI equivalent: -v / --verbose
verbose: 1
"""

    with open(output_path, 'w') as f:
        f.write(template)

    logger.info(f"Configuration file created: {output_path}")
    return output_path
