"""
Unit tests for config.py
"""

import json

import pytest

from ecg2omop.config import PipelineConfig, load_config, validate_config
from ecg2omop.errors import ConfigurationError


def test_defaults():
    config = validate_config({"input_dir": "in"})

    assert config == PipelineConfig(input_dir="in")
    assert config.output_format == "csv"
    assert not config.dry_run


def test_load_config(tmp_path):
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps({"input_dir": "in", "output_format": "parquet", "create_tables": True}))
    config = load_config(path)

    assert config.input_dir == "in"
    assert config.output_format == "parquet"
    assert config.create_tables


def test_merged_overrides_skip_none():
    config = PipelineConfig(input_dir="in", database_url="sqlite://").merged(input_dir=None, output_dir="out", dry_run=True)

    assert config.input_dir == "in"
    assert config.output_dir == "out"
    assert config.dry_run
    assert config.database_url == "sqlite://"


@pytest.mark.parametrize(
    "values",
    [
        {"output_format": "xlsx"},
        {"dry_run": "yes"},
        {"input_dir": 3},
        {"unknown_key": 1},
    ],
)
def test_invalid_values(values):
    with pytest.raises(ConfigurationError):
        validate_config(values)


def test_unreadable_files(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(broken)

    listing = tmp_path / "list.json"
    listing.write_text("[]")
    with pytest.raises(ConfigurationError):
        load_config(listing)
