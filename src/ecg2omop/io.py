"""
Reading and writing assembled OMOP tables as one file per table.

Files are named after the table (`person.csv`, `measurement.parquet`, ...),
so a transform run and a later load run can exchange tables through a
directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Union

import polars as pl
import pyarrow.parquet as pq

from ecg2omop.assembler import OMOPTables
from ecg2omop.config import OUTPUT_FORMATS
from ecg2omop.errors import ConfigurationError
from ecg2omop.schema import DATE_FORMAT, DATETIME_FORMAT, EntityKind, conform


def write_tables(tables: OMOPTables, directory: Union[str, Path], fmt: str = "csv", verbose: bool = False) -> Dict[str, Path]:
    """
    Write every table of `tables` into `directory`.

    Returns:
        table name -> written path
    """
    if fmt not in OUTPUT_FORMATS:
        raise ConfigurationError(f"Unknown output format '{fmt}', expected one of {list(OUTPUT_FORMATS)}")

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = {}
    for kind, df in tables.items():
        path = directory / f"{kind.value}.{fmt}"
        if fmt == "parquet":
            pq.write_table(df.to_arrow(), path)
        else:
            df.write_csv(path, date_format=DATE_FORMAT, datetime_format=DATETIME_FORMAT)
        written[kind.value] = path
        if verbose:
            print(f"  wrote {path} ({len(df):,} rows)")
    return written


def read_table_file(kind: EntityKind, path: Path) -> pl.DataFrame:
    try:
        if path.suffix.lower() == ".parquet":
            df = pl.read_parquet(path)
        else:
            df = pl.read_csv(path, infer_schema=False)
    except (OSError, pl.exceptions.PolarsError) as e:
        raise ConfigurationError(f"Cannot read OMOP table '{path}': {e}") from e
    return conform(kind, df)


def read_tables(directory: Union[str, Path]) -> OMOPTables:
    """
    Read every `<table>.csv|.parquet` file of `directory`.

    A file named after a table outside the load order raises LoadOrderError.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Tables directory '{directory}' does not exist")

    tables = OMOPTables()
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in (".csv", ".parquet"):
            continue
        kind = EntityKind.from_table_name(path.stem)
        if kind in tables:
            raise ConfigurationError(f"Table '{kind.value}' is present in more than one format in '{directory}'")
        tables[kind] = read_table_file(kind, path)

    if len(tables) == 0:
        raise ConfigurationError(f"No OMOP tables found in '{directory}'")
    return tables
