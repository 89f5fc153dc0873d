"""
Incremental load of assembled OMOP tables into a persistent store.

Tables are processed in LOAD_ORDER. For each table the incoming rows are
compared with the persisted rows on their natural key (every column except
the primary key and the volatile columns); rows already present are skipped
and only novel rows are written. Surrogate keys assigned during assembly are
run-local, so they are replaced before writing:

- novel rows get a contiguous block of ids above the largest persisted id;
- present rows take the id of the persisted row they match.

The resulting run id -> persisted id maps rewrite the foreign keys of every
table loaded later in the same run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

import polars as pl
from tqdm import tqdm

from ecg2omop.assembler import OMOPTables
from ecg2omop.errors import ConfigurationError, ConsistencyError
from ecg2omop.schema import LOAD_ORDER, EntityKind, ForeignKey, TableSchema, conform, get_schema
from ecg2omop.store import OMOPStore

# Stands in for missing values in natural-key comparisons; cannot occur in real data
NULL_SENTINEL: str = "\x00<NULL>"

ID_MAP_SCHEMA: Dict[str, pl.DataType] = {"run_id": pl.Int64, "persisted_id": pl.Int64}


@dataclass
class TableLoad:
    """Outcome for one table: rows written and rows found already persisted."""

    kind: EntityKind
    inserted: pl.DataFrame
    duplicates: pl.DataFrame
    id_map: Optional[pl.DataFrame] = None


@dataclass
class LoadResult:
    dry_run: bool = False
    tables: Dict[EntityKind, TableLoad] = field(default_factory=dict)

    def inserted(self, kind) -> pl.DataFrame:
        return self.tables[get_schema(kind).kind].inserted

    def duplicates(self, kind) -> pl.DataFrame:
        return self.tables[get_schema(kind).kind].duplicates

    def inserted_counts(self) -> Dict[str, int]:
        return {k.value: len(t.inserted) for k, t in self.tables.items()}

    def duplicate_counts(self) -> Dict[str, int]:
        return {k.value: len(t.duplicates) for k, t in self.tables.items()}

    @property
    def total_inserted(self) -> int:
        return sum(len(t.inserted) for t in self.tables.values())

    def summary(self) -> str:
        lines = []
        for kind, load in self.tables.items():
            lines.append(f"  {kind.value:<22} inserted {len(load.inserted):>8,}   already present {len(load.duplicates):>8,}")
        header = "Load summary (dry run, nothing written)" if self.dry_run else "Load summary"
        return "\n".join([header] + lines)


def _ordered_tables(tables: Union[OMOPTables, Mapping]) -> List[tuple]:
    """(kind, df) pairs in load order; unknown table names raise LoadOrderError."""
    if isinstance(tables, OMOPTables):
        return tables.items()
    by_kind = {get_schema(name).kind: df for name, df in tables.items()}
    return [(k, by_kind[k]) for k in LOAD_ORDER if k in by_kind]


def _check_parents(ordered: List[tuple]) -> None:
    """Fail if a table references a parent table that is absent from the load."""
    present = {kind for kind, _ in ordered}
    for kind, df in ordered:
        schema = get_schema(kind)
        for fk in schema.foreign_keys:
            if fk.references in present or fk.column not in df.columns:
                continue
            if df[fk.column].null_count() < len(df):
                raise ConsistencyError(
                    f"{schema.name}.{fk.column} references {fk.references.value}, which is not part of this load; "
                    f"run-local ids cannot be matched to persisted rows"
                )


def _key_projection(df: pl.DataFrame, columns: List[str]) -> List[pl.Expr]:
    return [pl.col(c).cast(pl.Utf8).fill_null(NULL_SENTINEL).alias(c) for c in columns]


class IncrementalLoader:
    """
    Loads one run's OMOP tables into an OMOPStore without duplicating rows.

    Usage:
        loader = IncrementalLoader(OMOPStore("sqlite:///omop.db"))
        result = loader.load(tables)
    """

    def __init__(self, store: OMOPStore, dry_run: bool = False, verbose: bool = False):
        self.store = store
        self.dry_run = dry_run
        self.verbose = verbose
        self.id_maps: Dict[EntityKind, pl.DataFrame] = {}
        self._loaded: Dict[EntityKind, pl.DataFrame] = {}

    # ------------------------------------------------------------------
    # foreign keys
    # ------------------------------------------------------------------

    def remap_foreign_keys(self, schema: TableSchema, df: pl.DataFrame) -> pl.DataFrame:
        """Replace run-local references by persisted ids for parents loaded in this run."""
        for fk in schema.foreign_keys:
            id_map = self.id_maps.get(fk.references)
            if id_map is None:
                if df[fk.column].null_count() < len(df):
                    raise ConsistencyError(
                        f"{schema.name}.{fk.column} holds run-local {fk.references.value} ids, but "
                        f"{fk.references.value} is not part of this load"
                    )
                continue
            mapped = (
                df.with_row_index("_row")
                .join(id_map.rename({"run_id": fk.column}), on=fk.column, how="left")
                .sort("_row")
            )
            dangling = mapped.filter(pl.col(fk.column).is_not_null() & pl.col("persisted_id").is_null())
            if len(dangling) > 0:
                ids = dangling[fk.column].unique().sort().to_list()
                raise ConsistencyError(
                    f"{schema.name}.{fk.column} references {fk.references.value} rows {ids} that are not in this load"
                )
            df = mapped.with_columns(pl.col("persisted_id").alias(fk.column)).drop("_row", "persisted_id")
        return df

    def _reference_values(self, fk: ForeignKey, ids: pl.Series) -> pl.DataFrame:
        """Map persisted ids of the referenced table to their `compare_by` values."""
        target = get_schema(fk.references)
        columns = [fk.referenced_column, fk.compare_by]
        wanted = ids.drop_nulls().unique().to_list()

        frames = [self.store.read_existing(fk.references, columns, where={fk.referenced_column: wanted})]
        if fk.references in self._loaded:
            frames.append(self._loaded[fk.references].select(columns))
        lookup = pl.concat(frames, how="vertical").unique(subset=fk.referenced_column, keep="first")
        return lookup.select(
            pl.col(fk.referenced_column).cast(target.dtype(fk.referenced_column)),
            pl.col(fk.compare_by).cast(pl.Utf8).alias(f"_{fk.column}_ref"),
        )

    def _comparable(self, schema: TableSchema, df: pl.DataFrame, lookups: Dict[str, pl.DataFrame]) -> pl.DataFrame:
        """Natural-key columns as strings, referenced-by-value FKs replaced by that value."""
        for column, lookup in lookups.items():
            fk = schema.foreign_key(column)
            df = (
                df.with_row_index("_row")
                .join(lookup.rename({fk.referenced_column: column}), on=column, how="left")
                .sort("_row")
                .with_columns(pl.col(f"_{column}_ref").alias(column))
                .drop("_row", f"_{column}_ref")
            )
        return df.select(_key_projection(df, schema.natural_key_columns()))

    # ------------------------------------------------------------------
    # per table
    # ------------------------------------------------------------------

    def _probe(self, schema: TableSchema, incoming: pl.DataFrame) -> Optional[Dict[str, list]]:
        """Restriction of the existing-row read, or None to read the whole table."""
        probe = list(schema.probe_columns)
        if not probe and schema.foreign_key("person_id") is not None:
            # person_id is part of the natural key, so rows of other persons cannot match
            probe = ["person_id"]
        if not probe:
            return None
        return {c: incoming[c].drop_nulls().unique().to_list() for c in probe}

    def load_table(self, kind: EntityKind, df: pl.DataFrame) -> TableLoad:
        schema = get_schema(kind)
        incoming = self.remap_foreign_keys(schema, conform(kind, df))

        key_columns = schema.natural_key_columns()
        read_columns = key_columns + ([schema.primary_key] if schema.primary_key else [])
        existing = self.store.read_existing(kind, read_columns, where=self._probe(schema, incoming))

        lookups = {}
        for fk in schema.foreign_keys:
            if fk.compare_by is not None:
                ids = pl.concat([incoming[fk.column], existing[fk.column]])
                lookups[fk.column] = self._reference_values(fk, ids)

        incoming_keys = self._comparable(schema, incoming, lookups).with_row_index("_row")
        existing_keys = self._comparable(schema, existing, lookups)
        if schema.primary_key:
            existing_keys = (
                existing_keys.with_columns(existing[schema.primary_key].alias("_match"))
                .group_by(key_columns)
                .agg(pl.col("_match").min())
            )
        else:
            existing_keys = existing_keys.unique().with_columns(pl.lit(True).alias("_match"))

        matched = incoming_keys.join(existing_keys, on=key_columns, how="left").sort("_row")["_match"]
        present = matched.is_not_null()

        id_map = None
        if schema.surrogate_key is not None:
            pk = schema.surrogate_key
            n_novel = int((~present).sum())
            base = self.store.max_id(kind, pk)
            persisted = matched.cast(pl.Int64).alias(pk)
            if n_novel:
                novel_ids = pl.Series(range(base + 1, base + n_novel + 1), dtype=pl.Int64)
                persisted = persisted.scatter((~present).arg_true(), novel_ids)

            id_map = pl.DataFrame({"run_id": incoming[pk], "persisted_id": persisted}, schema=ID_MAP_SCHEMA)
            self.id_maps[kind] = id_map
            incoming = incoming.with_columns(persisted.alias(pk))

        novel = incoming.filter(~present)
        duplicates = incoming.filter(present)

        if not self.dry_run:
            self.store.insert(kind, novel)
        self._loaded[kind] = incoming

        if self.verbose:
            tqdm.write(f"  {schema.name}: {len(novel):,} new, {len(duplicates):,} already present")
        return TableLoad(kind=kind, inserted=novel, duplicates=duplicates, id_map=id_map)

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def load(self, tables: Union[OMOPTables, Mapping]) -> LoadResult:
        """
        Load every table in LOAD_ORDER.

        Table names are checked before anything is written: a table outside
        the load order raises LoadOrderError, a table whose referenced parent
        tables are not part of the load raises ConsistencyError, and a table
        missing from the store raises ConfigurationError.
        """
        ordered = _ordered_tables(tables)
        _check_parents(ordered)

        missing = self.store.missing_tables([k for k, _ in ordered])
        if missing:
            raise ConfigurationError(f"Store lacks tables {missing}; create them first (--create_tables)")

        result = LoadResult(dry_run=self.dry_run)
        for kind, df in tqdm(ordered, desc="Loading OMOP tables", unit="table", disable=not self.verbose):
            result.tables[kind] = self.load_table(kind, df)

        if self.verbose:
            print(result.summary())
        return result


def load_tables(
    tables: Union[OMOPTables, Mapping],
    store: OMOPStore,
    dry_run: bool = False,
    verbose: bool = False,
) -> LoadResult:
    """Load one run's tables with a fresh IncrementalLoader."""
    return IncrementalLoader(store, dry_run=dry_run, verbose=verbose).load(tables)
