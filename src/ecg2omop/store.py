"""
Relational store for the OMOP tables, on SQLAlchemy Core.

Table definitions are generated from the schema registry, so the database
only ever holds the subset of OMOP CDM columns the pipeline produces. Any
SQLAlchemy URL works; PostgreSQL is the production target and SQLite is used
for local runs and tests.
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Union

import polars as pl
import sqlalchemy as sa
from sqlalchemy.engine import Engine

from ecg2omop.schema import LOAD_ORDER, SCHEMAS, EntityKind, conform, get_schema, string_length

# Maximum number of bound values per IN clause
IN_CLAUSE_CHUNK: int = 500


def _sql_type(name: str, dtype: pl.DataType) -> sa.types.TypeEngine:
    if dtype == pl.Int64:
        return sa.BigInteger()
    if dtype == pl.Float64:
        return sa.Float()
    if dtype == pl.Date:
        return sa.Date()
    if isinstance(dtype, pl.Datetime):
        return sa.DateTime()
    return sa.String(string_length(name))


def build_metadata(schema: Optional[str] = None) -> sa.MetaData:
    """SQLAlchemy metadata with one Table per registered OMOP entity."""
    metadata = sa.MetaData(schema=schema)
    prefix = f"{schema}." if schema else ""

    for kind in LOAD_ORDER:
        table_schema = SCHEMAS[kind]
        columns = []
        for name, dtype in table_schema.fields:
            args = []
            fk = table_schema.foreign_key(name)
            # Event ids point at several OMOP tables, so they carry no constraint
            if fk is not None and fk.compare_by is None:
                args.append(sa.ForeignKey(f"{prefix}{fk.references.value}.{fk.referenced_column}"))
            columns.append(
                sa.Column(
                    name,
                    _sql_type(name, dtype),
                    *args,
                    primary_key=(name == table_schema.primary_key),
                    autoincrement=False,
                    nullable=(name not in table_schema.required),
                )
            )
        sa.Table(table_schema.name, metadata, *columns)

    return metadata


class OMOPStore:
    """
    Read/insert access to the OMOP tables of one database.

    Every insert runs in its own transaction, so a failure leaves the tables
    written before it committed.
    """

    def __init__(self, url_or_engine: Union[str, Engine], schema: Optional[str] = None, verbose: bool = False):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = sa.create_engine(url_or_engine)
        self.schema = schema
        self.verbose = verbose
        self.metadata = build_metadata(schema)

    def table(self, kind) -> sa.Table:
        name = get_schema(kind).name
        key = f"{self.schema}.{name}" if self.schema else name
        return self.metadata.tables[key]

    def create_tables(self) -> None:
        """Create the OMOP tables that do not exist yet."""
        self.metadata.create_all(self.engine, checkfirst=True)
        if self.verbose:
            print(f"Ensured {len(self.metadata.tables)} OMOP tables in {self.engine.url.render_as_string()}")

    def missing_tables(self, kinds: Optional[Sequence[EntityKind]] = None) -> List[str]:
        inspector = sa.inspect(self.engine)
        kinds = LOAD_ORDER if kinds is None else kinds
        return [
            get_schema(k).name for k in kinds if not inspector.has_table(get_schema(k).name, schema=self.schema)
        ]

    def _frame(self, kind, columns: Sequence[str], rows) -> pl.DataFrame:
        table_schema = get_schema(kind)
        polars_schema = {c: table_schema.dtype(c) for c in columns}
        return pl.DataFrame([tuple(r) for r in rows], schema=polars_schema, orient="row")

    def read_existing(
        self,
        kind,
        columns: Optional[Sequence[str]] = None,
        where: Optional[Mapping[str, Sequence]] = None,
    ) -> pl.DataFrame:
        """
        Read persisted rows of one table.

        Args:
            kind: EntityKind or table name
            columns: Columns to read (all by default)
            where: column -> candidate values; a row is returned when any of
                the listed columns holds one of its values. An empty mapping
                entry matches nothing.

        Returns:
            DataFrame with the requested columns in schema dtypes
        """
        table = self.table(kind)
        columns = list(columns) if columns is not None else get_schema(kind).columns
        selected = [table.c[c] for c in columns]

        if where is None:
            with self.engine.connect() as conn:
                rows = conn.execute(sa.select(*selected)).all()
            return self._frame(kind, columns, rows)

        rows = []
        with self.engine.connect() as conn:
            for column, values in where.items():
                values = [v for v in values if v is not None]
                for start in range(0, len(values), IN_CLAUSE_CHUNK):
                    chunk = values[start : start + IN_CLAUSE_CHUNK]
                    rows.extend(conn.execute(sa.select(*selected).where(table.c[column].in_(chunk))).all())
        return self._frame(kind, columns, rows).unique(maintain_order=True)

    def read_table(self, kind) -> pl.DataFrame:
        return self.read_existing(kind)

    def max_id(self, kind, column: Optional[str] = None) -> int:
        """Largest persisted value of the key column, 0 for an empty table."""
        column = column or get_schema(kind).primary_key
        table = self.table(kind)
        with self.engine.connect() as conn:
            value = conn.execute(sa.select(sa.func.max(table.c[column]))).scalar()
        return int(value) if value is not None else 0

    def count(self, kind) -> int:
        table = self.table(kind)
        with self.engine.connect() as conn:
            return int(conn.execute(sa.select(sa.func.count()).select_from(table)).scalar())

    def insert(self, kind, df: pl.DataFrame) -> int:
        """Insert all rows of `df` in a single transaction. Returns the row count."""
        if len(df) == 0:
            return 0
        rows = conform(kind, df).to_dicts()
        with self.engine.begin() as conn:
            conn.execute(self.table(kind).insert(), rows)
        return len(rows)

    def dispose(self) -> None:
        self.engine.dispose()
