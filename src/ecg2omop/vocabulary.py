"""
Controlled-vocabulary resolution.

Vocabulary documents are tables with four columns (TableName, FieldName,
SourceTerm, ConceptID) stored as CSV or Parquet files in one directory. All
documents found in the directory are unioned into a single mapping which is
cached by a `VocabularyStore` together with a fingerprint of the directory
listing. The mapping is reloaded whenever the fingerprint changes.

Usage:
    store = VocabularyStore("path/to/vocabularies")
    ids = resolve(store, "person", "gender_concept_id", ["M", "F", None])
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import polars as pl

from ecg2omop.errors import ConfigurationError, ResolutionError

VOCABULARY_COLUMNS: Tuple[str, ...] = ("TableName", "FieldName", "SourceTerm", "ConceptID")

# Missing source terms are looked up under this literal term
MISSING_TERM: str = "<missing>"

DEFAULT_VOCABULARY_DIR: Path = Path(__file__).resolve().parent / "vocabularies"

VOCABULARY_SUFFIXES: Tuple[str, ...] = (".csv", ".parquet")

Fingerprint = Tuple[Tuple[str, int, int], ...]


class VocabularyStore:
    """
    Loaded vocabulary mapping plus the fingerprint of the directory it came from.

    The store is plain mutable state owned by the caller; it is not safe to
    share between threads without external locking.
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None, verbose: bool = False):
        self.directory = Path(directory) if directory is not None else DEFAULT_VOCABULARY_DIR
        self.verbose = verbose
        self._table: Optional[pl.DataFrame] = None
        self._fingerprint: Optional[Fingerprint] = None

    def document_paths(self) -> List[Path]:
        if not self.directory.is_dir():
            raise ConfigurationError(f"Vocabulary directory '{self.directory}' does not exist")
        return sorted(
            p for p in self.directory.iterdir() if p.is_file() and p.suffix.lower() in VOCABULARY_SUFFIXES
        )

    def fingerprint(self) -> Fingerprint:
        """Names, sizes and modification times of the vocabulary documents."""
        entries = []
        for path in self.document_paths():
            stat = path.stat()
            entries.append((path.name, stat.st_size, stat.st_mtime_ns))
        return tuple(entries)

    @property
    def is_loaded(self) -> bool:
        return self._table is not None

    def invalidate(self) -> None:
        """Drop the cached mapping; the next lookup reloads every document."""
        self._table = None
        self._fingerprint = None

    def reload(self) -> pl.DataFrame:
        """Read, union and validate all documents, replacing the cached mapping."""
        fingerprint = self.fingerprint()
        if not fingerprint:
            raise ConfigurationError(
                f"No vocabulary documents ({', '.join(VOCABULARY_SUFFIXES)}) found in '{self.directory}'"
            )

        frames = [read_vocabulary_document(self.directory / name) for name, _, _ in fingerprint]
        table = pl.concat(frames, how="vertical").unique(maintain_order=True)
        check_unambiguous(table)

        self._table = table
        self._fingerprint = fingerprint
        if self.verbose:
            print(f"Loaded {len(table):,} vocabulary mappings from {len(frames)} document(s) in {self.directory}")
        return table

    def ensure_current(self) -> pl.DataFrame:
        """Return the cached mapping, reloading it first if the directory changed."""
        if self._table is None or self.fingerprint() != self._fingerprint:
            return self.reload()
        return self._table

    @property
    def table(self) -> pl.DataFrame:
        return self.ensure_current()


def read_vocabulary_document(path: Path) -> pl.DataFrame:
    """Read one vocabulary document into the four-column mapping layout."""
    try:
        if path.suffix.lower() == ".parquet":
            df = pl.read_parquet(path)
        else:
            df = pl.read_csv(path, infer_schema=False)
    except (OSError, pl.exceptions.PolarsError) as e:
        raise ConfigurationError(f"Cannot read vocabulary document '{path}': {e}") from e

    missing = [c for c in VOCABULARY_COLUMNS if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Vocabulary document '{path.name}' lacks columns {missing}")

    df = df.select(
        pl.col("TableName").cast(pl.Utf8).str.strip_chars(),
        pl.col("FieldName").cast(pl.Utf8).str.strip_chars(),
        pl.col("SourceTerm").cast(pl.Utf8).str.strip_chars(),
        pl.col("ConceptID").cast(pl.Utf8).str.strip_chars(),
    )

    bad_rows = df.filter(
        pl.col("TableName").is_null() | pl.col("FieldName").is_null() | pl.col("SourceTerm").is_null()
    )
    if len(bad_rows) > 0:
        raise ConfigurationError(
            f"Vocabulary document '{path.name}' has {len(bad_rows)} row(s) without TableName, FieldName or SourceTerm"
        )

    concept_ids = df["ConceptID"].cast(pl.Int64, strict=False)
    invalid = df.filter(concept_ids.is_null())
    if len(invalid) > 0:
        terms = invalid.select("TableName", "FieldName", "SourceTerm").rows()
        raise ConfigurationError(f"Vocabulary document '{path.name}' has non-integer ConceptIDs for {terms}")

    return df.with_columns(ConceptID=concept_ids)


def check_unambiguous(table: pl.DataFrame) -> None:
    """
    Fail if any (TableName, FieldName, SourceTerm) triplet maps to more than one concept.

    Source terms are compared case-insensitively, as lookups are.
    """
    conflicts = (
        table.group_by("TableName", "FieldName", pl.col("SourceTerm").str.to_lowercase().alias("term"))
        .agg(pl.col("ConceptID").unique().sort().alias("concept_ids"))
        .filter(pl.col("concept_ids").list.len() > 1)
        .sort("TableName", "FieldName", "term")
    )
    if len(conflicts) == 0:
        return

    lines = [
        f"{row['TableName']}.{row['FieldName']} '{row['term']}' -> {row['concept_ids']}"
        for row in conflicts.iter_rows(named=True)
    ]
    raise ConfigurationError(
        "Ambiguous vocabulary: the following TableName-FieldName-SourceTerm triplets map to "
        "more than one ConceptID:\n  " + "\n  ".join(lines)
    )


def normalize_terms(source_terms: Union[pl.Series, Iterable[Optional[str]]]) -> pl.Series:
    """Cast source terms to strings and replace missing or blank ones with MISSING_TERM."""
    if isinstance(source_terms, pl.Series):
        terms = source_terms.cast(pl.Utf8)
    else:
        terms = pl.Series("SourceTerm", [None if t is None else str(t) for t in source_terms], dtype=pl.Utf8)
    term = pl.col("SourceTerm").str.strip_chars()
    return (
        pl.DataFrame({"SourceTerm": terms})
        .select(pl.when(term.is_null() | (term == "")).then(pl.lit(MISSING_TERM)).otherwise(term).alias("SourceTerm"))
        .to_series()
    )


def resolve(
    store: VocabularyStore,
    table_name: str,
    field_name: str,
    source_terms: Union[pl.Series, Iterable[Optional[str]]],
    strict: bool = True,
) -> pl.Series:
    """
    Map source terms to concept ids for one (table, field) pair.

    Args:
        store: Vocabulary store; reloaded first if its directory changed
        table_name: OMOP table the concept ids are destined for
        field_name: OMOP field the concept ids are destined for
        source_terms: Terms to resolve; missing terms match MISSING_TERM
        strict: If True, any unmatched term raises ResolutionError; otherwise
            unmatched positions resolve to null

    Returns:
        Int64 Series of concept ids named `field_name`, same length and order as
        `source_terms`.
    """
    vocab = store.ensure_current()
    terms = normalize_terms(source_terms)

    subset = (
        vocab.filter((pl.col("TableName") == table_name) & (pl.col("FieldName") == field_name))
        .select(key=pl.col("SourceTerm").str.to_lowercase(), concept_id=pl.col("ConceptID"))
        .unique(subset="key", keep="first", maintain_order=True)
    )

    matched = (
        pl.DataFrame({"term": terms})
        .with_row_index("position")
        .with_columns(key=pl.col("term").str.to_lowercase())
        .join(subset, on="key", how="left")
        .sort("position")
    )

    unmatched = matched.filter(pl.col("concept_id").is_null())["term"].unique(maintain_order=True).to_list()
    if unmatched and strict:
        raise ResolutionError(table_name, field_name, unmatched)

    return matched["concept_id"].cast(pl.Int64).alias(field_name)


def resolve_constant(store: VocabularyStore, table_name: str, field_name: str, term: str, n: int) -> pl.Series:
    """Resolve a single fixed term (strictly) and repeat it `n` times."""
    if n == 0:
        return pl.Series(field_name, [], dtype=pl.Int64)
    concept_id = resolve(store, table_name, field_name, [term], strict=True)[0]
    return pl.Series(field_name, [concept_id] * n, dtype=pl.Int64)
