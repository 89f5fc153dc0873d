"""
Unit tests for io.py
"""

import datetime

import pytest

from ecg2omop.assembler import assemble
from ecg2omop.errors import ConfigurationError, LoadOrderError
from ecg2omop.io import read_tables, write_tables
from ecg2omop.schema import LOAD_ORDER, EntityKind


@pytest.fixture
def p1_tables(p1_inputs, default_vocabulary):
    return assemble(p1_inputs, default_vocabulary, today=datetime.date(2024, 1, 1))


@pytest.mark.parametrize("fmt", ["csv", "parquet"])
def test_written_tables_read_back(tmp_path, p1_tables, fmt):
    written = write_tables(p1_tables, tmp_path / "omop", fmt)

    assert sorted(written) == sorted(k.value for k in LOAD_ORDER)
    assert written["person"].name == f"person.{fmt}"

    tables = read_tables(tmp_path / "omop")
    assert tables.row_counts() == p1_tables.row_counts()
    for kind in (EntityKind.PROCEDURE_OCCURRENCE, EntityKind.MEASUREMENT, EntityKind.CONCEPT):
        assert tables[kind].equals(p1_tables[kind])


def test_unknown_format(tmp_path, p1_tables):
    with pytest.raises(ConfigurationError):
        write_tables(p1_tables, tmp_path, "xlsx")


def test_unknown_table_file(tmp_path, p1_tables):
    write_tables(p1_tables, tmp_path)
    (tmp_path / "lab_results.csv").write_text("a,b\n1,2\n")

    with pytest.raises(LoadOrderError):
        read_tables(tmp_path)


def test_table_in_two_formats(tmp_path, p1_tables):
    write_tables(p1_tables, tmp_path, "csv")
    write_tables(p1_tables, tmp_path, "parquet")

    with pytest.raises(ConfigurationError):
        read_tables(tmp_path)


def test_nothing_to_read(tmp_path):
    with pytest.raises(ConfigurationError):
        read_tables(tmp_path / "missing")
    with pytest.raises(ConfigurationError):
        read_tables(tmp_path)
