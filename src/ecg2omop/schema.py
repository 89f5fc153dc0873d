"""
Schema registry for the OMOP CDM tables produced by ecg2omop and for the
flat per-exam tables consumed from the extraction stage.

Each OMOP table is described once, by a `TableSchema` keyed on its
`EntityKind`: ordered field names and polars dtypes, the required subset,
its primary key, its surrogate key (if any), explicit foreign-key
descriptors and the volatile columns that never take part in duplicate
detection. The registry is validated when this module is imported.

Reference: https://ohdsi.github.io/CommonDataModel/cdm54.html
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import polars as pl

from ecg2omop.errors import LoadOrderError, SchemaError

# OMOP varchar(50) limit on the string attributes we populate
MAX_STRING_LENGTH: int = 50

# Longer varchar columns in OMOP CDM v5.4
STRING_LENGTHS: Dict[str, int] = {
    "concept_name": 255,
    "vocabulary_name": 255,
    "vocabulary_reference": 255,
    "standard_concept": 1,
}

DATE_FORMAT: str = "%Y-%m-%d"
DATETIME_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# ============================================================================
# OMOP ENTITY SCHEMAS
# ============================================================================


class EntityKind(str, enum.Enum):
    """OMOP tables handled by the pipeline. The value is the table name."""

    VOCABULARY = "vocabulary"
    CONCEPT = "concept"
    CONCEPT_RELATIONSHIP = "concept_relationship"
    PERSON = "person"
    OBSERVATION_PERIOD = "observation_period"
    VISIT_OCCURRENCE = "visit_occurrence"
    PROCEDURE_OCCURRENCE = "procedure_occurrence"
    CONDITION_OCCURRENCE = "condition_occurrence"
    MEASUREMENT = "measurement"
    OBSERVATION = "observation"

    @classmethod
    def from_table_name(cls, table_name: str) -> "EntityKind":
        try:
            return cls(table_name.lower())
        except ValueError:
            known = ", ".join(k.value for k in LOAD_ORDER)
            raise LoadOrderError(
                f"Table '{table_name}' is not part of the fixed load order ({known})"
            ) from None


@dataclass(frozen=True)
class ForeignKey:
    """
    Reference from `column` to the surrogate key of another entity.

    `compare_by` names a column of the referenced entity that identifies the
    referenced row across runs; when set, duplicate detection compares that
    value instead of the run-local numeric key.
    """

    column: str
    references: EntityKind
    referenced_column: str
    compare_by: Optional[str] = None


@dataclass(frozen=True)
class TableSchema:
    kind: EntityKind
    fields: Tuple[Tuple[str, pl.DataType], ...]
    required: Tuple[str, ...]
    primary_key: Optional[str] = None
    surrogate_key: Optional[str] = None
    foreign_keys: Tuple[ForeignKey, ...] = ()
    volatile: Tuple[str, ...] = ()
    probe_columns: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def columns(self) -> List[str]:
        return [name for name, _ in self.fields]

    @property
    def polars_schema(self) -> Dict[str, pl.DataType]:
        return dict(self.fields)

    def dtype(self, column: str) -> pl.DataType:
        return self.polars_schema[column]

    def natural_key_columns(self) -> List[str]:
        """Columns compared to decide whether two rows are the same fact."""
        excluded = set(self.volatile)
        if self.primary_key is not None:
            excluded.add(self.primary_key)
        return [c for c in self.columns if c not in excluded]

    def foreign_key(self, column: str) -> Optional[ForeignKey]:
        for fk in self.foreign_keys:
            if fk.column == column:
                return fk
        return None


_I = pl.Int64
_F = pl.Float64
_S = pl.Utf8
_D = pl.Date
_T = pl.Datetime("us")

_PERSON_FK = ForeignKey("person_id", EntityKind.PERSON, "person_id")
_VISIT_FK = ForeignKey("visit_occurrence_id", EntityKind.VISIT_OCCURRENCE, "visit_occurrence_id")


def _event_fk(column: str) -> ForeignKey:
    # *_event_id columns are polymorphic in OMOP; the pipeline only links them to procedures
    return ForeignKey(
        column,
        EntityKind.PROCEDURE_OCCURRENCE,
        "procedure_occurrence_id",
        compare_by="procedure_source_value",
    )


SCHEMAS: Dict[EntityKind, TableSchema] = {
    EntityKind.VOCABULARY: TableSchema(
        kind=EntityKind.VOCABULARY,
        fields=(
            ("vocabulary_id", _S),
            ("vocabulary_name", _S),
            ("vocabulary_concept_id", _I),
            ("vocabulary_reference", _S),
            ("vocabulary_version", _S),
        ),
        required=("vocabulary_id", "vocabulary_name", "vocabulary_concept_id"),
        primary_key="vocabulary_id",
    ),
    EntityKind.CONCEPT: TableSchema(
        kind=EntityKind.CONCEPT,
        fields=(
            ("concept_id", _I),
            ("concept_name", _S),
            ("concept_code", _S),
            ("domain_id", _S),
            ("vocabulary_id", _S),
            ("concept_class_id", _S),
            ("valid_start_date", _D),
            ("valid_end_date", _D),
            ("standard_concept", _S),
        ),
        required=(
            "concept_id",
            "concept_name",
            "concept_code",
            "domain_id",
            "vocabulary_id",
            "concept_class_id",
            "valid_start_date",
            "valid_end_date",
        ),
        primary_key="concept_id",
        volatile=("valid_start_date", "valid_end_date"),
        probe_columns=("concept_name",),
    ),
    EntityKind.CONCEPT_RELATIONSHIP: TableSchema(
        kind=EntityKind.CONCEPT_RELATIONSHIP,
        fields=(
            ("concept_id_1", _I),
            ("concept_id_2", _I),
            ("relationship_id", _S),
            ("valid_start_date", _D),
            ("valid_end_date", _D),
        ),
        required=("concept_id_1", "concept_id_2", "relationship_id", "valid_start_date", "valid_end_date"),
        volatile=("valid_start_date", "valid_end_date"),
        probe_columns=("concept_id_1", "concept_id_2"),
    ),
    EntityKind.PERSON: TableSchema(
        kind=EntityKind.PERSON,
        fields=(
            ("person_id", _I),
            ("gender_concept_id", _I),
            ("year_of_birth", _I),
            ("race_concept_id", _I),
            ("ethnicity_concept_id", _I),
            ("person_source_value", _S),
            ("gender_source_value", _S),
            ("race_source_value", _S),
            ("ethnicity_source_value", _S),
        ),
        required=("person_id", "gender_concept_id", "year_of_birth", "race_concept_id", "ethnicity_concept_id"),
        primary_key="person_id",
        surrogate_key="person_id",
    ),
    EntityKind.OBSERVATION_PERIOD: TableSchema(
        kind=EntityKind.OBSERVATION_PERIOD,
        fields=(
            ("observation_period_id", _I),
            ("person_id", _I),
            ("observation_period_start_date", _D),
            ("observation_period_end_date", _D),
            ("period_type_concept_id", _I),
        ),
        required=(
            "observation_period_id",
            "person_id",
            "observation_period_start_date",
            "observation_period_end_date",
            "period_type_concept_id",
        ),
        primary_key="observation_period_id",
        surrogate_key="observation_period_id",
        foreign_keys=(_PERSON_FK,),
    ),
    EntityKind.VISIT_OCCURRENCE: TableSchema(
        kind=EntityKind.VISIT_OCCURRENCE,
        fields=(
            ("visit_occurrence_id", _I),
            ("person_id", _I),
            ("visit_concept_id", _I),
            ("visit_start_date", _D),
            ("visit_end_date", _D),
            ("visit_type_concept_id", _I),
        ),
        required=(
            "visit_occurrence_id",
            "person_id",
            "visit_concept_id",
            "visit_start_date",
            "visit_end_date",
            "visit_type_concept_id",
        ),
        primary_key="visit_occurrence_id",
        surrogate_key="visit_occurrence_id",
        foreign_keys=(_PERSON_FK,),
    ),
    EntityKind.PROCEDURE_OCCURRENCE: TableSchema(
        kind=EntityKind.PROCEDURE_OCCURRENCE,
        fields=(
            ("procedure_occurrence_id", _I),
            ("person_id", _I),
            ("procedure_concept_id", _I),
            ("procedure_date", _D),
            ("procedure_type_concept_id", _I),
            ("procedure_datetime", _T),
            ("procedure_end_date", _D),
            ("procedure_end_datetime", _T),
            ("visit_occurrence_id", _I),
            ("procedure_source_value", _S),
        ),
        required=(
            "procedure_occurrence_id",
            "person_id",
            "procedure_concept_id",
            "procedure_date",
            "procedure_type_concept_id",
        ),
        primary_key="procedure_occurrence_id",
        surrogate_key="procedure_occurrence_id",
        foreign_keys=(_PERSON_FK, _VISIT_FK),
    ),
    EntityKind.CONDITION_OCCURRENCE: TableSchema(
        kind=EntityKind.CONDITION_OCCURRENCE,
        fields=(
            ("condition_occurrence_id", _I),
            ("person_id", _I),
            ("condition_concept_id", _I),
            ("condition_start_date", _D),
            ("condition_type_concept_id", _I),
            ("visit_occurrence_id", _I),
            ("condition_source_value", _S),
        ),
        required=(
            "condition_occurrence_id",
            "person_id",
            "condition_concept_id",
            "condition_start_date",
            "condition_type_concept_id",
        ),
        primary_key="condition_occurrence_id",
        surrogate_key="condition_occurrence_id",
        foreign_keys=(_PERSON_FK, _VISIT_FK),
    ),
    EntityKind.MEASUREMENT: TableSchema(
        kind=EntityKind.MEASUREMENT,
        fields=(
            ("measurement_id", _I),
            ("person_id", _I),
            ("measurement_concept_id", _I),
            ("measurement_date", _D),
            ("measurement_type_concept_id", _I),
            ("measurement_datetime", _T),
            ("value_as_number", _F),
            ("unit_concept_id", _I),
            ("unit_source_value", _S),
            ("visit_occurrence_id", _I),
            ("measurement_source_value", _S),
            ("measurement_source_concept_id", _I),
            ("measurement_event_id", _I),
            ("meas_event_field_concept_id", _I),
        ),
        required=(
            "measurement_id",
            "person_id",
            "measurement_concept_id",
            "measurement_date",
            "measurement_type_concept_id",
        ),
        primary_key="measurement_id",
        surrogate_key="measurement_id",
        foreign_keys=(_PERSON_FK, _VISIT_FK, _event_fk("measurement_event_id")),
    ),
    EntityKind.OBSERVATION: TableSchema(
        kind=EntityKind.OBSERVATION,
        fields=(
            ("observation_id", _I),
            ("person_id", _I),
            ("observation_concept_id", _I),
            ("observation_date", _D),
            ("observation_type_concept_id", _I),
            ("observation_datetime", _T),
            ("value_as_number", _F),
            ("unit_concept_id", _I),
            ("unit_source_value", _S),
            ("visit_occurrence_id", _I),
            ("observation_source_value", _S),
            ("observation_source_concept_id", _I),
            ("observation_event_id", _I),
            ("obs_event_field_concept_id", _I),
        ),
        required=(
            "observation_id",
            "person_id",
            "observation_concept_id",
            "observation_date",
            "observation_type_concept_id",
        ),
        primary_key="observation_id",
        surrogate_key="observation_id",
        foreign_keys=(_PERSON_FK, _VISIT_FK, _event_fk("observation_event_id")),
    ),
}

# Tables must be written in this order so that every foreign key points to a persisted row
LOAD_ORDER: Tuple[EntityKind, ...] = (
    EntityKind.VOCABULARY,
    EntityKind.CONCEPT,
    EntityKind.CONCEPT_RELATIONSHIP,
    EntityKind.PERSON,
    EntityKind.OBSERVATION_PERIOD,
    EntityKind.VISIT_OCCURRENCE,
    EntityKind.PROCEDURE_OCCURRENCE,
    EntityKind.CONDITION_OCCURRENCE,
    EntityKind.MEASUREMENT,
    EntityKind.OBSERVATION,
)


def validate_registry(schemas: Dict[EntityKind, TableSchema], load_order: Tuple[EntityKind, ...]) -> None:
    """
    Check the internal consistency of a schema registry.

    Every kind must appear exactly once in the load order, every declared
    column (required, keys, volatile, probe) must exist, and every foreign
    key must target the surrogate key of an entity loaded earlier.
    """
    errors = []

    if sorted(k.value for k in load_order) != sorted(k.value for k in schemas):
        errors.append("load order and schema registry do not list the same tables")

    for kind, schema in schemas.items():
        if schema.kind is not kind:
            errors.append(f"{kind.value}: registered under the wrong kind ({schema.kind.value})")
        columns = set(schema.columns)
        if len(columns) != len(schema.fields):
            errors.append(f"{kind.value}: duplicated field names")

        declared = list(schema.required) + list(schema.volatile) + list(schema.probe_columns)
        declared += [c for c in (schema.primary_key, schema.surrogate_key) if c is not None]
        for column in declared:
            if column not in columns:
                errors.append(f"{kind.value}: declared column '{column}' is not a field")

        if schema.surrogate_key is not None and schema.surrogate_key != schema.primary_key:
            errors.append(f"{kind.value}: surrogate key must be the primary key")

        for fk in schema.foreign_keys:
            if fk.column not in columns:
                errors.append(f"{kind.value}: foreign key column '{fk.column}' is not a field")
            target = schemas.get(fk.references)
            if target is None:
                errors.append(f"{kind.value}.{fk.column}: references unknown table {fk.references.value}")
                continue
            if target.surrogate_key != fk.referenced_column:
                errors.append(
                    f"{kind.value}.{fk.column}: must reference the surrogate key of "
                    f"{target.name} ('{target.surrogate_key}'), not '{fk.referenced_column}'"
                )
            if fk.compare_by is not None and fk.compare_by not in target.columns:
                errors.append(f"{kind.value}.{fk.column}: compare_by '{fk.compare_by}' not in {target.name}")
            if kind in load_order and fk.references in load_order:
                if load_order.index(fk.references) >= load_order.index(kind):
                    errors.append(f"{kind.value}.{fk.column}: {target.name} is not loaded before {kind.value}")

    if errors:
        raise SchemaError("Invalid schema registry:\n  " + "\n  ".join(errors))


validate_registry(SCHEMAS, LOAD_ORDER)


def get_schema(kind) -> TableSchema:
    if not isinstance(kind, EntityKind):
        kind = EntityKind.from_table_name(kind)
    return SCHEMAS[kind]


# ============================================================================
# FRAME UTILITIES
# ============================================================================


def cast_column(name: str, target: pl.DataType, source: Optional[pl.DataType] = None) -> pl.Expr:
    """Cast a column, parsing ISO strings when a string column becomes a date or datetime."""
    col = pl.col(name)
    if source == pl.Utf8 and target == pl.Date:
        return col.str.strip_chars().str.slice(0, 10).str.to_date(DATE_FORMAT).alias(name)
    if source == pl.Utf8 and isinstance(target, pl.Datetime):
        return col.str.strip_chars().str.slice(0, 19).str.to_datetime(DATETIME_FORMAT, time_unit="us").alias(name)
    return col.cast(target).alias(name)


def string_length(column: str) -> int:
    """varchar length of a string column."""
    return STRING_LENGTHS.get(column, MAX_STRING_LENGTH)


def empty_table(kind) -> pl.DataFrame:
    return pl.DataFrame(schema=get_schema(kind).polars_schema)


def conform(kind, df: pl.DataFrame, truncate: bool = False) -> pl.DataFrame:
    """
    Return `df` with exactly the columns of `kind`, in schema order and dtype.

    Missing optional columns are added as nulls; a missing required column is
    a SchemaError. With `truncate`, strings are cut to their OMOP varchar length.
    """
    schema = get_schema(kind)
    missing = [c for c in schema.required if c not in df.columns]
    if missing:
        raise SchemaError(f"Table '{schema.name}' lacks required columns: {missing}")

    exprs = []
    for name, dtype in schema.fields:
        if name not in df.columns:
            exprs.append(pl.lit(None, dtype=dtype).alias(name))
            continue
        expr = cast_column(name, dtype, df.schema[name])
        if truncate and dtype == pl.Utf8:
            expr = expr.str.slice(0, string_length(name))
        exprs.append(expr)

    try:
        return df.select(exprs)
    except pl.exceptions.PolarsError as e:
        raise SchemaError(f"Table '{schema.name}' has values that do not match the schema: {e}") from e


# ============================================================================
# FLAT INPUT LAYOUTS
# ============================================================================


class FlatKind(str, enum.Enum):
    """Per-exam tables written by the extraction stage."""

    NOTES = "notes"
    SAMPLES = "samples"
    RR_INTERVALS = "rr_intervals"
    ANNOTATIONS = "annotations"
    HRV_METRICS = "hrv_metrics"
    AUTO_DIAGNOSES = "auto_diagnoses"


STANDARD_LEADS: Tuple[str, ...] = (
    "Lead_I",
    "Lead_II",
    "Lead_III",
    "Lead_aVF",
    "Lead_aVR",
    "Lead_aVL",
    "Lead_V1",
    "Lead_V2",
    "Lead_V3",
    "Lead_V4",
    "Lead_V5",
    "Lead_V6",
)

HRV_METRICS: Tuple[str, ...] = (
    "RR",
    "NN",
    "AVNN",
    "SDNN",
    "RMSSD",
    "pNN50",
    "SEM",
    "BETA_FFT",
    "HF_NORM_FFT",
    "HF_PEAK_FFT",
    "HF_POWER_FFT",
    "LF_NORM_FFT",
    "LF_PEAK_FFT",
    "LF_POWER_FFT",
    "LF_TO_HF_FFT",
    "TOTAL_POWER_FFT",
    "VLF_NORM_FFT",
    "VLF_POWER_FFT",
    "SD1",
    "SD2",
    "alpha1",
    "alpha2",
    "SampEn",
    "PIP",
    "IALS",
    "PSS",
    "PAS",
)


@dataclass(frozen=True)
class FlatLayout:
    kind: FlatKind
    prefix: str
    fields: Tuple[Tuple[str, pl.DataType], ...]
    has_foreign_key: bool = True
    mandatory: Tuple[str, ...] = field(default=("ID",))

    @property
    def columns(self) -> List[str]:
        return [name for name, _ in self.fields]

    @property
    def polars_schema(self) -> Dict[str, pl.DataType]:
        return dict(self.fields)

    def empty(self) -> pl.DataFrame:
        return pl.DataFrame(schema=self.polars_schema)

    def complete(self, df: pl.DataFrame) -> pl.DataFrame:
        """Add any layout column `df` lacks as nulls and order columns as the layout does."""
        exprs = []
        for name, dtype in self.fields:
            if name in df.columns:
                exprs.append(pl.col(name).cast(dtype))
            else:
                exprs.append(pl.lit(None, dtype=dtype).alias(name))
        return df.select(exprs)


def _flat(kind: FlatKind, prefix: str, fields, has_foreign_key: bool = True) -> FlatLayout:
    fields = (("ID", _I),) + tuple(fields)
    mandatory: Tuple[str, ...] = ("ID",)
    if has_foreign_key:
        fields = fields + (("FK_ID", _I),)
        mandatory = ("ID", "FK_ID")
    return FlatLayout(kind=kind, prefix=prefix, fields=fields, has_foreign_key=has_foreign_key, mandatory=mandatory)


FLAT_LAYOUTS: Dict[FlatKind, FlatLayout] = {
    FlatKind.NOTES: _flat(
        FlatKind.NOTES,
        "comm_",
        (
            ("RecordName", _S),
            ("DatasetName", _S),
            ("RecordDate", _S),
            ("RecordEnd", _S),
            ("Patient", _S),
            ("Age", _F),
            ("Sex", _S),
            ("Diagnosis", _S),
            ("OtherNotes", _S),
        ),
        has_foreign_key=False,
    ),
    FlatKind.SAMPLES: _flat(
        FlatKind.SAMPLES,
        "samp_",
        (("Timestamp", _S),) + tuple((lead, _F) for lead in STANDARD_LEADS),
    ),
    FlatKind.RR_INTERVALS: _flat(
        FlatKind.RR_INTERVALS,
        "rrid_",
        (("StartTimestamp", _S), ("RRIntervalDuration", _F), ("EndTimestamp", _S)),
    ),
    FlatKind.ANNOTATIONS: _flat(
        FlatKind.ANNOTATIONS,
        "anno_",
        (
            ("Timestamp", _S),
            ("Sample", _F),
            ("AnnType", _S),
            ("AnnExplanation", _S),
            ("SubType", _F),
            ("Chan", _F),
            ("Num", _F),
            ("Comments", _S),
        ),
    ),
    FlatKind.HRV_METRICS: _flat(FlatKind.HRV_METRICS, "mhrv_", tuple((m, _F) for m in HRV_METRICS)),
    FlatKind.AUTO_DIAGNOSES: _flat(FlatKind.AUTO_DIAGNOSES, "dgn_", (("AutoECGDiagnosis", _S),)),
}
