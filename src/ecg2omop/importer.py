"""
Import of the flat per-exam tables written by the extraction stage.

Every dataset contributes one file per table kind, named `<prefix><dataset>`
(e.g. `comm_ptbdb.csv`, `samp_ptbdb.parquet`). Files of the same kind are
merged into a single table with fresh, contiguous IDs; tables pointing at the
notes table (`FK_ID`) are rewired to the renumbered notes through the id map
returned when the notes were imported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import polars as pl

from ecg2omop.errors import ConsistencyError, SchemaError
from ecg2omop.schema import FLAT_LAYOUTS, FlatKind, FlatLayout

INPUT_SUFFIXES: Tuple[str, ...] = (".csv", ".parquet")

ID_MAP_SCHEMA: Dict[str, pl.DataType] = {"orig_id": pl.Int64, "dataset": pl.Utf8, "new_id": pl.Int64}


def empty_id_map() -> pl.DataFrame:
    return pl.DataFrame(schema=ID_MAP_SCHEMA)


def find_input_files(directory: Union[str, Path], layout: FlatLayout) -> List[Tuple[str, Path]]:
    """
    Return (dataset, path) pairs for every file of `layout`, sorted by file name.

    When a dataset ships both a CSV and a Parquet file, the first one in
    sorted order is used.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConsistencyError(f"Input directory '{directory}' does not exist")

    found: Dict[str, Path] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in INPUT_SUFFIXES:
            continue
        if not path.name.startswith(layout.prefix):
            continue
        dataset = path.stem[len(layout.prefix) :]
        if dataset and dataset not in found:
            found[dataset] = path
    return sorted(found.items(), key=lambda item: item[1].name)


def read_flat_file(path: Path) -> pl.DataFrame:
    """Read a flat input file with every column as a string."""
    try:
        if path.suffix.lower() == ".parquet":
            df = pl.read_parquet(path)
            return df.select([pl.col(c).cast(pl.Utf8) for c in df.columns])
        return pl.read_csv(path, infer_schema=False)
    except (OSError, pl.exceptions.PolarsError) as e:
        raise SchemaError(f"Cannot read input table '{path}': {e}") from e


def _narrow(df: pl.DataFrame, columns: List[str], layout: FlatLayout, path: Path) -> pl.DataFrame:
    """Keep `columns` of `df`, cast to the layout dtypes."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise SchemaError(f"'{path.name}' lacks columns {missing} present in the first {layout.kind.value} table")

    exprs = []
    for name in columns:
        dtype = layout.polars_schema[name]
        col = pl.col(name)
        if dtype == pl.Utf8:
            exprs.append(col)
        else:
            exprs.append(col.str.strip_chars().cast(dtype, strict=True).alias(name))
    try:
        return df.select(exprs)
    except pl.exceptions.PolarsError as e:
        raise SchemaError(f"'{path.name}' has values that cannot be read as the {layout.kind.value} layout: {e}") from e


def _translate_foreign_keys(df: pl.DataFrame, dataset: str, id_map: pl.DataFrame, path: Path) -> pl.DataFrame:
    subset = id_map.filter(pl.col("dataset") == dataset)
    if len(subset) == 0:
        raise ConsistencyError(f"'{path.name}' belongs to dataset '{dataset}', which has no imported notes")

    subset = subset.select(pl.col("orig_id").alias("FK_ID"), pl.col("new_id"))
    translated = df.with_row_index("_row").join(subset, on="FK_ID", how="left").sort("_row").drop("_row")

    dangling = translated.filter(pl.col("new_id").is_null())["FK_ID"].unique(maintain_order=True).to_list()
    if dangling:
        raise ConsistencyError(f"'{path.name}' references exams {dangling} that are not in dataset '{dataset}'")

    return translated.with_columns(pl.col("new_id").alias("FK_ID")).drop("new_id")


def import_tables(
    directory: Union[str, Path],
    kind: FlatKind,
    at_least_one: bool = False,
    id_map: Optional[pl.DataFrame] = None,
    verbose: bool = False,
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    Merge every dataset's table of one flat kind.

    Args:
        directory: Folder holding the extracted tables
        kind: Flat layout to import
        at_least_one: Fail if no file of this kind is found
        id_map: (orig_id, dataset, new_id) map of the notes import; required
            when the layout carries FK_ID
        verbose: Print the files being merged

    Returns:
        (merged table with IDs 1..n in file order, id map of this import)
    """
    layout = FLAT_LAYOUTS[kind]
    files = find_input_files(directory, layout)

    if not files:
        if at_least_one:
            raise ConsistencyError(
                f"No {kind.value} tables ('{layout.prefix}<dataset>.csv|.parquet') found in '{directory}'"
            )
        if verbose:
            print(f"  ⚠️  No {kind.value} tables ('{layout.prefix}<dataset>') found, continuing without them")
        return layout.empty(), empty_id_map()

    if layout.has_foreign_key and id_map is None:
        raise ConsistencyError(f"{kind.value} tables reference the notes table but no id map was given")

    columns: Optional[List[str]] = None
    frames = []
    maps = []
    offset = 0

    for dataset, path in files:
        raw = read_flat_file(path)

        if columns is None:
            columns = [c for c in layout.columns if c in raw.columns]
            missing = [c for c in layout.mandatory if c not in columns]
            if missing:
                raise SchemaError(f"'{path.name}' lacks mandatory columns {missing}")

        df = _narrow(raw, columns, layout, path)

        if df["ID"].null_count() > 0:
            raise SchemaError(f"'{path.name}' has rows without an ID")
        if df["ID"].n_unique() != len(df):
            raise ConsistencyError(f"'{path.name}' has duplicated IDs")

        if layout.has_foreign_key:
            df = _translate_foreign_keys(df, dataset, id_map, path)

        n = len(df)
        maps.append(
            pl.DataFrame(
                {
                    "orig_id": df["ID"],
                    "dataset": [dataset] * n,
                    "new_id": pl.int_range(offset + 1, offset + n + 1, eager=True, dtype=pl.Int64),
                },
                schema=ID_MAP_SCHEMA,
            )
        )
        frames.append(df.with_columns(pl.int_range(offset + 1, offset + n + 1, dtype=pl.Int64).alias("ID")))
        offset += n

        if verbose:
            print(f"  {kind.value}: {path.name} ({n:,} rows, dataset '{dataset}')")

    merged = layout.complete(pl.concat(frames, how="vertical"))
    return merged, pl.concat(maps, how="vertical")


@dataclass
class FlatInputs:
    """The six flat tables of one import, notes IDs renumbered 1..n."""

    notes: pl.DataFrame
    samples: pl.DataFrame = field(default_factory=lambda: FLAT_LAYOUTS[FlatKind.SAMPLES].empty())
    rr_intervals: pl.DataFrame = field(default_factory=lambda: FLAT_LAYOUTS[FlatKind.RR_INTERVALS].empty())
    annotations: pl.DataFrame = field(default_factory=lambda: FLAT_LAYOUTS[FlatKind.ANNOTATIONS].empty())
    hrv_metrics: pl.DataFrame = field(default_factory=lambda: FLAT_LAYOUTS[FlatKind.HRV_METRICS].empty())
    auto_diagnoses: pl.DataFrame = field(default_factory=lambda: FLAT_LAYOUTS[FlatKind.AUTO_DIAGNOSES].empty())
    id_map: pl.DataFrame = field(default_factory=empty_id_map)

    def get(self, kind: FlatKind) -> pl.DataFrame:
        return getattr(self, kind.value)


def import_all(directory: Union[str, Path], verbose: bool = False) -> FlatInputs:
    """Import the notes (at least one file required) and every table that points at them."""
    if verbose:
        print(f"Importing flat tables from {directory}")

    notes, id_map = import_tables(directory, FlatKind.NOTES, at_least_one=True, verbose=verbose)
    tables = {}
    for kind in FlatKind:
        if kind is FlatKind.NOTES:
            continue
        tables[kind.value], _ = import_tables(directory, kind, id_map=id_map, verbose=verbose)

    return FlatInputs(notes=notes, id_map=id_map, **tables)
