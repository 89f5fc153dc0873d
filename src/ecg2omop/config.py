"""
Pipeline configuration.

A run is configured by a JSON file; command-line flags override individual
keys. Example:

    {
        "input_dir": "data/extracted",
        "output_dir": "data/omop",
        "vocabulary_dir": "vocabularies",
        "database_url": "postgresql+psycopg2://user@localhost/omop",
        "output_format": "parquet",
        "create_tables": true
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import jsonschema

from ecg2omop.errors import ConfigurationError

OUTPUT_FORMATS = ("csv", "parquet")

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "input_dir": {"type": ["string", "null"]},
        "output_dir": {"type": ["string", "null"]},
        "vocabulary_dir": {"type": ["string", "null"]},
        "database_url": {"type": ["string", "null"]},
        "db_schema": {"type": ["string", "null"]},
        "output_format": {"enum": list(OUTPUT_FORMATS)},
        "dry_run": {"type": "boolean"},
        "create_tables": {"type": "boolean"},
        "verbose": {"type": "boolean"},
    },
    "additionalProperties": False,
}


@dataclass
class PipelineConfig:
    input_dir: Optional[str] = None
    output_dir: Optional[str] = None
    vocabulary_dir: Optional[str] = None
    database_url: Optional[str] = None
    db_schema: Optional[str] = None
    output_format: str = "csv"
    dry_run: bool = False
    create_tables: bool = False
    verbose: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merged(self, **overrides) -> "PipelineConfig":
        """Copy with every non-None override applied."""
        values = self.to_dict()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return validate_config(values)


def validate_config(values: Dict[str, Any]) -> PipelineConfig:
    """Validate a configuration mapping and fill defaults."""
    try:
        jsonschema.validate(instance=values, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid configuration at {location}: {e.message}") from e

    known = {f.name for f in fields(PipelineConfig)}
    return PipelineConfig(**{k: v for k, v in values.items() if k in known})


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Read and validate a JSON configuration file."""
    path = Path(path)
    try:
        with open(path) as f:
            values = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file '{path}' is not valid JSON: {e}") from e

    if not isinstance(values, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a JSON object")
    return validate_config(values)
