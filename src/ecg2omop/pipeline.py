"""
Transform and load steps as callable functions; the CLI is a thin wrapper.
"""

from __future__ import annotations

import datetime
import time
from pathlib import Path
from typing import Optional, Union

from ecg2omop.assembler import OMOPTables, assemble
from ecg2omop.config import PipelineConfig
from ecg2omop.errors import ConfigurationError
from ecg2omop.importer import import_all
from ecg2omop.io import read_tables, write_tables
from ecg2omop.loader import LoadResult, load_tables
from ecg2omop.store import OMOPStore
from ecg2omop.vocabulary import VocabularyStore


def run_transform(
    input_dir: Union[str, Path],
    output_dir: Optional[Union[str, Path]] = None,
    vocabulary_dir: Optional[Union[str, Path]] = None,
    output_format: str = "csv",
    verbose: bool = False,
    today: Optional[datetime.date] = None,
) -> OMOPTables:
    """
    Import the flat tables of `input_dir` and assemble the OMOP tables.

    When `output_dir` is given the tables are also written there.
    """
    start = time.time()
    vocabulary = VocabularyStore(vocabulary_dir, verbose=verbose)
    inputs = import_all(input_dir, verbose=verbose)

    if verbose:
        print(f"Assembling OMOP tables for {len(inputs.notes):,} exams")
    tables = assemble(inputs, vocabulary, verbose=verbose, today=today)

    if output_dir is not None:
        write_tables(tables, output_dir, output_format, verbose=verbose)

    if verbose:
        print(f"Transform finished in {time.time() - start:.1f}s")
    return tables


def run_load(
    tables: Union[OMOPTables, str, Path],
    database_url: str,
    db_schema: Optional[str] = None,
    dry_run: bool = False,
    create_tables: bool = False,
    verbose: bool = False,
) -> LoadResult:
    """
    Load assembled tables (in memory, or a directory written by run_transform)
    into the database at `database_url`.
    """
    if not database_url:
        raise ConfigurationError("A database_url is required to load tables")
    if not isinstance(tables, OMOPTables):
        tables = read_tables(tables)

    store = OMOPStore(database_url, schema=db_schema, verbose=verbose)
    try:
        if create_tables and not dry_run:
            store.create_tables()
        return load_tables(tables, store, dry_run=dry_run, verbose=verbose)
    finally:
        store.dispose()


def run_pipeline(config: PipelineConfig) -> LoadResult:
    """Transform `config.input_dir` and load the result into `config.database_url`."""
    if not config.input_dir:
        raise ConfigurationError("An input_dir is required to run the pipeline")
    tables = run_transform(
        config.input_dir,
        output_dir=config.output_dir,
        vocabulary_dir=config.vocabulary_dir,
        output_format=config.output_format,
        verbose=config.verbose,
    )
    return run_load(
        tables,
        config.database_url,
        db_schema=config.db_schema,
        dry_run=config.dry_run,
        create_tables=config.create_tables,
        verbose=config.verbose,
    )
