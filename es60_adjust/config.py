#!/usr/bin/env python3
"""
Parameter files for es60_adjust.

Parameters are kept in YAML, e.g. config/es60_adjust.yaml:

    correction:
      filename_suffix: c
      progress_interval: 100
    analysis:
      first: 0
      last: 4
      ...
    log_level: INFO

Keys left out keep their defaults.
"""

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Optional

import yaml

from .corrector import DEFAULT_PROGRESS_INTERVAL, DEFAULT_SUFFIX
from .exceptions import ConfigurationError
from .phase_search import Algorithm, AnalysisParameters


logger = logging.getLogger(__name__)


@dataclass
class CorrectionConfig:
    filename_suffix: str = DEFAULT_SUFFIX
    output_directory: Optional[str] = None
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL


@dataclass
class Es60AdjustConfig:
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    analysis: AnalysisParameters = field(default_factory=AnalysisParameters)
    log_level: str = 'INFO'

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['analysis']['algorithm'] = self.analysis.algorithm.value
        return data


def _apply(section: str, defaults, values: Optional[Dict[str, Any]]):
    """Return a copy of a config dataclass with values from one YAML section."""
    if values is None:
        return defaults
    if not isinstance(values, dict):
        raise ConfigurationError(f"'{section}' must be a mapping, got {type(values).__name__}")

    known = {f.name for f in fields(defaults)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown {section} parameters: {', '.join(sorted(unknown))}")
    return replace(defaults, **values)


def config_from_dict(data: Optional[Dict[str, Any]]) -> Es60AdjustConfig:
    """Build a configuration from parsed YAML."""
    config = Es60AdjustConfig()
    if not data:
        return config
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    unknown = set(data) - {'correction', 'analysis', 'log_level'}
    if unknown:
        raise ConfigurationError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    correction = _apply('correction', config.correction, data.get('correction'))
    analysis = _apply('analysis', config.analysis, data.get('analysis'))
    try:
        analysis = replace(analysis, algorithm=Algorithm(analysis.algorithm))
    except ValueError:
        choices = ', '.join(a.value for a in Algorithm)
        raise ConfigurationError(f"Unknown algorithm '{analysis.algorithm}', expected one of {choices}")

    log_level = str(data.get('log_level', config.log_level)).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigurationError(f"Unknown log level '{log_level}'")

    return Es60AdjustConfig(correction=correction, analysis=analysis, log_level=log_level)


def load_config(path: Optional[str] = None) -> Es60AdjustConfig:
    """
    Load parameters from a YAML file.

    Args:
        path: YAML file, or None for the built-in defaults

    Raises:
        ConfigurationError: if the file holds unknown or invalid parameters
        OSError: if the file cannot be read
    """
    if path is None:
        return Es60AdjustConfig()

    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}")

    config = config_from_dict(data)
    logger.debug(f"Loaded configuration from {path}")
    return config
