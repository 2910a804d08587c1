"""Configuration management for megparcel.

This module provides configuration loading, validation, and access utilities.
All configuration is loaded from a YAML file (config.yaml) which should be
created from config.yaml.template.

Usage:
    from megparcel.utils.config import load_config, get_config

    # Load configuration (typically done once at startup)
    config = load_config('config.yaml')

    # Access configuration values
    derivatives = config['paths']['derivatives']
    subjects = config['dataset']['subjects']
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from megparcel.utils.errors import ConfigurationError

__all__ = [
    "ConfigurationError",
    "find_config_file",
    "validate_config",
    "expand_paths",
    "load_config",
    "get_subjects",
    "get_task_name",
    "get_random_seed",
    "get_config",
]

REQUIRED_SECTIONS = [
    "paths",
    "dataset",
    "inputs",
    "source_reconstruction",
    "computing",
    "logging",
    "reproducibility",
]

REQUIRED_PATHS = ["data_root", "derivatives", "logs"]

REQUIRED_INPUTS = ["sensor_data", "transform", "head_model", "source_model", "atlas", "atlas_labels"]


def find_config_file(config_path: Optional[str] = None) -> Path:
    """Find the configuration file.

    Args:
        config_path: Optional path to config file. If not provided, searches
            for config.yaml in standard locations.

    Returns:
        Path to configuration file.

    Raises:
        ConfigurationError: If config file not found.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        return path

    search_paths = [
        Path.cwd() / "config.yaml",
        Path.cwd().parent / "config.yaml",
        Path(__file__).parent.parent.parent / "config.yaml",  # Project root
    ]

    for path in search_paths:
        if path.exists():
            return path

    raise ConfigurationError(
        "config.yaml not found. Please create it from config.yaml.template"
    )


def _is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("<") and value.endswith(">")


def validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration structure and required fields.

    Only the layout is checked here; numeric source reconstruction parameters
    are validated when the pipeline parameters are built from the config.

    Args:
        config: Configuration dictionary.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise ConfigurationError(f"Missing required section: {section}")

    for path_key in REQUIRED_PATHS:
        if path_key not in config["paths"]:
            raise ConfigurationError(f"Missing required path: paths.{path_key}")

    for input_key in REQUIRED_INPUTS:
        if input_key not in config["inputs"]:
            raise ConfigurationError(f"Missing required input template: inputs.{input_key}")

    placeholders_found = [
        f"paths.{key}" for key, value in config["paths"].items() if _is_placeholder(value)
    ]

    slurm_config = config["computing"].get("slurm", {})
    if slurm_config.get("enabled", False) and _is_placeholder(slurm_config.get("account", "")):
        placeholders_found.append("computing.slurm.account")

    if placeholders_found:
        raise ConfigurationError(
            f"Configuration contains unresolved placeholders: {', '.join(placeholders_found)}\n"
            "Please update config.yaml with actual values."
        )

    if not config["dataset"].get("subjects"):
        raise ConfigurationError("No subjects specified in dataset.subjects")

    for template_key, template in config["inputs"].items():
        if template and "{subject}" not in str(template) and not template_key.startswith("atlas"):
            raise ConfigurationError(
                f"inputs.{template_key} must contain a '{{subject}}' placeholder: {template}"
            )


def expand_paths(config: Dict[str, Any]) -> Dict[str, Any]:
    """Expand relative paths in configuration to absolute paths.

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with expanded paths.
    """
    data_root = Path(config["paths"]["data_root"]).expanduser().resolve()
    config["paths"]["data_root"] = str(data_root)

    # Paths relative to data_root
    for key in ["derivatives"]:
        path = Path(config["paths"][key])
        if not path.is_absolute():
            path = data_root / path
        config["paths"][key] = str(path)

    # Project-specific paths
    for key in ["logs", "venv", "slurm_output"]:
        if key in config["paths"]:
            path = Path(config["paths"][key]).expanduser().resolve()
            config["paths"][key] = str(path)

    # Input templates are resolved against data_root but keep their placeholders
    for key, template in config["inputs"].items():
        if not template:
            continue
        if not Path(str(template).replace("{subject}", "x")).is_absolute():
            config["inputs"][key] = str(data_root / template)

    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Optional path to config file. If not provided, searches
            for config.yaml in standard locations.

    Returns:
        Configuration dictionary with validated and expanded paths.

    Raises:
        ConfigurationError: If configuration is invalid or incomplete.
    """
    config_file = find_config_file(config_path)

    try:
        with open(config_file, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing config file: {e}")

    if config is None:
        raise ConfigurationError("Config file is empty")

    validate_config(config)
    config = expand_paths(config)

    return config


def get_subjects(config: Dict[str, Any]) -> List[str]:
    """Get list of subjects from configuration.

    Args:
        config: Configuration dictionary.

    Returns:
        List of subject IDs.
    """
    return [str(subject) for subject in config["dataset"]["subjects"]]


def get_task_name(config: Dict[str, Any]) -> str:
    """Get the task label used in output filenames (defaults to 'rest')."""
    return config["dataset"].get("task_name", "rest")


def get_random_seed(config: Dict[str, Any]) -> int:
    """Get the seed used to shuffle the subject job queue."""
    return int(config["reproducibility"].get("random_seed", 42))


# Global configuration instance (loaded on first access)
_config: Optional[Dict[str, Any]] = None


def get_config(reload: bool = False) -> Dict[str, Any]:
    """Get the global configuration instance.

    This function maintains a singleton configuration instance. The first call
    loads the configuration; subsequent calls return the cached instance.

    Args:
        reload: If True, force reload configuration from file.

    Returns:
        Configuration dictionary.
    """
    global _config

    if _config is None or reload:
        _config = load_config()

    return _config
