"""
Assembly of OMOP CDM tables from the merged flat ECG tables.

Builders run in dependency order and share the notes table (one row per
exam). Each builder that creates a parent entity writes its key back onto the
notes (`person_id`, `visit_id`, `procedure_id`) so that later builders can
link to it with a join:

    person -> observation_period -> visit_occurrence -> procedure_occurrence
           -> {condition_occurrence, measurement/observation}

The custom vocabulary (vocabulary, concept, concept_relationship) does not
depend on the inputs. `assemble()` runs everything and returns the ten tables
conformed to their schemas.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import polars as pl

from ecg2omop.errors import ConsistencyError, LoadOrderError, SchemaError
from ecg2omop.importer import FlatInputs
from ecg2omop.schema import (
    FLAT_LAYOUTS,
    LOAD_ORDER,
    STANDARD_LEADS,
    EntityKind,
    FlatKind,
    conform,
    get_schema,
)
from ecg2omop.vocabulary import VocabularyStore, resolve, resolve_constant

# Recordings at least this long are Holter recordings
HOLTER_MIN_DURATION_MINUTES: float = 30.0

UNKNOWN: str = "unknown"

# Provenance labels of the three condition streams
MANUALLY_REPORTED = "ManuallyReported"
STANDARD_ANNOTATION = "StandardAnnotation"
AUTOMATICALLY_DETECTED = "AutomaticallyDetected"

# Beat annotations that denote a pathological finding
PATHOLOGICAL_BEATS: Tuple[str, ...] = (
    "Left bundle branch block beat",
    "Right bundle branch block beat",
    "Bundle branch block beat (unspecified)",
    "Atrial premature beat",
    "Aberrated atrial premature beat",
    "Nodal (junctional) premature beat",
    "Supraventricular premature or ectopic beat (atrial or nodal)",
    "Premature ventricular contraction",
    "R-on-T premature ventricular contraction",
    "Fusion of ventricular and normal beat",
    "Atrial escape beat",
    "Nodal (junctional) escape beat",
    "Supraventricular escape beat (atrial or nodal)",
    "Ventricular escape beat",
    "Paced beat",
    "Fusion of paced and normal beat",
)

# Automatic classifier outputs that are not conditions
NON_PATHOLOGICAL_AUTO_DIAGNOSES: Tuple[str, ...] = ("NoAbnormalities", "ImpossibleToEvaluate")

# metric -> (destination table, unit source value)
METRIC_ROUTING: Dict[str, Tuple[EntityKind, str]] = {
    "Duration": (EntityKind.MEASUREMENT, "s"),
    "FS": (EntityKind.OBSERVATION, "Hz"),
    "AVNN": (EntityKind.MEASUREMENT, "ms"),
    "SDNN": (EntityKind.MEASUREMENT, "ms"),
    "RMSSD": (EntityKind.MEASUREMENT, "ms"),
    "HF_NORM_FFT": (EntityKind.MEASUREMENT, "percent"),
    "HF_POWER_FFT": (EntityKind.MEASUREMENT, "ms2"),
    "LF_NORM_FFT": (EntityKind.MEASUREMENT, "percent"),
    "LF_POWER_FFT": (EntityKind.MEASUREMENT, "ms2"),
    "LF_TO_HF_FFT": (EntityKind.MEASUREMENT, "ratio"),
    "VLF_NORM_FFT": (EntityKind.MEASUREMENT, "percent"),
    "VLF_POWER_FFT": (EntityKind.MEASUREMENT, "ms2"),
    "SD1": (EntityKind.MEASUREMENT, "ms"),
    "SD2": (EntityKind.MEASUREMENT, "ms"),
    "alpha1": (EntityKind.MEASUREMENT, "a.u."),
    "alpha2": (EntityKind.MEASUREMENT, "a.u."),
    "SampEn": (EntityKind.MEASUREMENT, "a.u."),
}

# Metrics derived from the notes and samples rather than read from the HRV table
DERIVED_METRICS: Tuple[str, ...] = ("Duration", "FS")

NOTES_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S%.f"
SAMPLE_TIMESTAMP_FORMAT = "%H:%M:%S%.f"


# ============================================================================
# SHARED HELPERS
# ============================================================================


def _require(notes: pl.DataFrame, columns: Sequence[str], builder: str) -> None:
    missing = [c for c in columns if c not in notes.columns]
    if missing:
        raise ConsistencyError(f"{builder} needs {missing} on the notes table; run the parent builders first")


def _with_fraction(expr: pl.Expr) -> pl.Expr:
    """Append '.000' to timestamps written without fractional seconds."""
    expr = expr.str.strip_chars()
    return pl.when(expr.str.contains(".", literal=True)).then(expr).otherwise(pl.concat_str([expr, pl.lit(".000")]))


def with_exam_times(notes: pl.DataFrame) -> pl.DataFrame:
    """Add parsed `_start` / `_end` datetimes of each exam (idempotent)."""
    if "_start" in notes.columns and "_end" in notes.columns:
        return notes
    try:
        return notes.with_columns(
            _with_fraction(pl.col("RecordDate"))
            .str.to_datetime(NOTES_TIMESTAMP_FORMAT, time_unit="us", strict=True)
            .alias("_start"),
            _with_fraction(pl.col("RecordEnd"))
            .str.to_datetime(NOTES_TIMESTAMP_FORMAT, time_unit="us", strict=True)
            .alias("_end"),
        )
    except pl.exceptions.PolarsError as e:
        raise SchemaError(f"RecordDate/RecordEnd are not 'YYYY-MM-DD HH:MM:SS[.fff]' timestamps: {e}") from e


def _sequential_ids(n: int) -> pl.Series:
    return pl.int_range(1, n + 1, eager=True, dtype=pl.Int64)


def _attach(df: pl.DataFrame, other: pl.DataFrame, on, how: str = "left") -> pl.DataFrame:
    """Join keeping the row order of `df`."""
    return df.with_row_index("_row").join(other, on=on, how=how).sort("_row").drop("_row")


def _exam_links(notes: pl.DataFrame) -> pl.DataFrame:
    """Per-exam keys used to attach child rows (joined on FK_ID)."""
    return notes.select(
        pl.col("ID").alias("FK_ID"),
        pl.col("person_id"),
        pl.col("visit_id"),
        pl.col("_start").dt.date().alias("_visit_date"),
    )


# ============================================================================
# PERSON
# ============================================================================


def build_person(notes: pl.DataFrame, vocabulary: VocabularyStore) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    One person per distinct patient identity, in order of first appearance.

    Exams without a Patient value are treated as their own patient, identified
    by "<RecordName>_<DatasetName>". Demographics come from the first exam of
    each person.

    Returns:
        (person table, notes with `person_id`)
    """
    notes = with_exam_times(notes)

    patient = pl.col("Patient").str.strip_chars()
    notes = notes.with_columns(
        pl.when(patient.is_null() | (patient == ""))
        .then(pl.concat_str([pl.col("RecordName"), pl.lit("_"), pl.col("DatasetName")]))
        .otherwise(patient)
        .alias("_identity")
    )

    persons = notes.unique(subset="_identity", keep="first", maintain_order=True)
    n = len(persons)

    age = pl.col("Age").fill_nan(None)
    sex = pl.col("Sex").str.strip_chars()
    persons = persons.select(
        _sequential_ids(n).alias("person_id"),
        (pl.col("_start").dt.year().cast(pl.Float64) - age).round(0).cast(pl.Int64).fill_null(-1).alias("year_of_birth"),
        pl.col("_identity").alias("person_source_value"),
        pl.when(sex.is_null() | (sex == "")).then(pl.lit(UNKNOWN)).otherwise(sex).alias("gender_source_value"),
        pl.lit(UNKNOWN).alias("race_source_value"),
        pl.lit(UNKNOWN).alias("ethnicity_source_value"),
    )

    persons = persons.with_columns(
        resolve(vocabulary, "person", "gender_concept_id", persons["gender_source_value"]),
        resolve(vocabulary, "person", "race_concept_id", persons["race_source_value"]),
        resolve(vocabulary, "person", "ethnicity_concept_id", persons["ethnicity_source_value"]),
    )

    notes = _attach(notes, persons.select(pl.col("person_source_value").alias("_identity"), "person_id"), on="_identity")
    return conform(EntityKind.PERSON, persons), notes


# ============================================================================
# OBSERVATION PERIOD
# ============================================================================


def build_observation_period(notes: pl.DataFrame, vocabulary: VocabularyStore) -> pl.DataFrame:
    """One period per person, from the first exam start to the last exam end."""
    _require(notes, ["person_id"], "build_observation_period")
    notes = with_exam_times(notes)

    periods = (
        notes.group_by("person_id", maintain_order=True)
        .agg(
            pl.col("_start").min().dt.date().alias("observation_period_start_date"),
            pl.col("_end").max().dt.date().alias("observation_period_end_date"),
        )
        .sort("person_id")
    )
    n = len(periods)
    periods = periods.with_columns(
        _sequential_ids(n).alias("observation_period_id"),
        resolve_constant(vocabulary, "observation_period", "period_type_concept_id", "EHRencounter", n),
    )
    return conform(EntityKind.OBSERVATION_PERIOD, periods)


# ============================================================================
# VISIT OCCURRENCE
# ============================================================================


def build_visit_occurrence(notes: pl.DataFrame, vocabulary: VocabularyStore) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    One visit per person per calendar day with at least one exam.

    A visit starts and ends on the same day. Dates are the local calendar
    dates written in RecordDate; no time zone conversion is applied.

    Returns:
        (visit_occurrence table, notes with `visit_id`)
    """
    _require(notes, ["person_id"], "build_visit_occurrence")
    notes = with_exam_times(notes).with_columns(pl.col("_start").dt.date().alias("_visit_date"))

    visits = notes.select("person_id", "_visit_date").unique(maintain_order=True)
    n = len(visits)
    visits = visits.with_columns(_sequential_ids(n).alias("visit_occurrence_id"))

    notes = _attach(
        notes, visits.rename({"visit_occurrence_id": "visit_id"}), on=["person_id", "_visit_date"]
    ).drop("_visit_date")

    visits = visits.select(
        "visit_occurrence_id",
        "person_id",
        pl.col("_visit_date").alias("visit_start_date"),
        pl.col("_visit_date").alias("visit_end_date"),
        resolve_constant(vocabulary, "visit_occurrence", "visit_concept_id", "LabVisit", n),
        resolve_constant(vocabulary, "visit_occurrence", "visit_type_concept_id", "EHRencounter", n),
    )
    return conform(EntityKind.VISIT_OCCURRENCE, visits), notes


# ============================================================================
# PROCEDURE OCCURRENCE
# ============================================================================


def leads_complete(samples: pl.DataFrame) -> pl.DataFrame:
    """
    Per exam (FK_ID), whether every standard lead has a value at every sample.

    Returns:
        DataFrame with columns FK_ID, all_leads (Boolean)
    """
    present = [pl.col(lead).fill_nan(None).is_not_null() for lead in STANDARD_LEADS]
    return samples.group_by("FK_ID").agg(pl.all_horizontal(present).all().alias("all_leads"))


def classify_procedures(notes: pl.DataFrame, samples: pl.DataFrame) -> pl.Series:
    """
    Procedure term per exam: HolterECG for recordings of 30 minutes or more,
    12LeadECG for shorter recordings with all twelve standard leads,
    AmbulatoryECG otherwise.
    """
    notes = with_exam_times(notes)
    leads = leads_complete(samples).rename({"FK_ID": "ID"})
    exams = _attach(notes.select("ID", "_start", "_end"), leads, on="ID")

    minutes = (pl.col("_end") - pl.col("_start")).dt.total_microseconds() / 60_000_000
    return exams.select(
        pl.when(minutes >= HOLTER_MIN_DURATION_MINUTES)
        .then(pl.lit("HolterECG"))
        .when(pl.col("all_leads").fill_null(False))
        .then(pl.lit("12LeadECG"))
        .otherwise(pl.lit("AmbulatoryECG"))
        .alias("procedure_term")
    ).to_series()


def build_procedure_occurrence(
    notes: pl.DataFrame, samples: pl.DataFrame, vocabulary: VocabularyStore
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    One procedure per exam; the procedure id is the exam ID.

    Returns:
        (procedure_occurrence table, notes with `procedure_id`)
    """
    _require(notes, ["person_id", "visit_id"], "build_procedure_occurrence")
    notes = with_exam_times(notes)
    n = len(notes)

    procedures = notes.select(
        pl.col("ID").alias("procedure_occurrence_id"),
        "person_id",
        pl.col("_start").dt.date().alias("procedure_date"),
        pl.col("_start").dt.truncate("1s").alias("procedure_datetime"),
        pl.col("_end").dt.date().alias("procedure_end_date"),
        pl.col("_end").dt.truncate("1s").alias("procedure_end_datetime"),
        pl.col("visit_id").alias("visit_occurrence_id"),
        pl.concat_str([pl.col("DatasetName"), pl.lit("/"), pl.col("RecordName")]).alias("procedure_source_value"),
    )
    procedures = procedures.with_columns(
        resolve(vocabulary, "procedure_occurrence", "procedure_concept_id", classify_procedures(notes, samples)),
        resolve_constant(vocabulary, "procedure_occurrence", "procedure_type_concept_id", "EHRencounter", n),
    )

    notes = notes.with_columns(pl.col("ID").alias("procedure_id"))
    return conform(EntityKind.PROCEDURE_OCCURRENCE, procedures), notes


# ============================================================================
# CONDITION OCCURRENCE
# ============================================================================


def _manual_conditions(notes: pl.DataFrame) -> pl.DataFrame:
    return (
        notes.filter(pl.col("Diagnosis").is_not_null())
        .select(
            pl.col("Diagnosis").str.split(","),
            "person_id",
            "visit_id",
            pl.col("_start").dt.date().alias("_visit_date"),
        )
        .explode("Diagnosis")
        .with_columns(pl.col("Diagnosis").str.strip_chars())
        .filter(pl.col("Diagnosis").is_not_null() & (pl.col("Diagnosis") != ""))
    )


def _linked_conditions(table: pl.DataFrame, column: str, keep: pl.Expr, links: pl.DataFrame) -> pl.DataFrame:
    table = table.select(pl.col(column).str.strip_chars().alias("Diagnosis"), "FK_ID").filter(keep)
    return _attach(table, links, on="FK_ID", how="inner").select("Diagnosis", "person_id", "visit_id", "_visit_date")


def build_condition_occurrence(
    notes: pl.DataFrame,
    annotations: pl.DataFrame,
    auto_diagnoses: pl.DataFrame,
    vocabulary: VocabularyStore,
) -> pl.DataFrame:
    """
    Conditions from three provenance streams.

    - ManuallyReported: comma-separated clinician diagnoses of the notes
    - StandardAnnotation: beat annotations in PATHOLOGICAL_BEATS
    - AutomaticallyDetected: classifier labels other than
      NON_PATHOLOGICAL_AUTO_DIAGNOSES

    Each stream keeps one row per (diagnosis, person, visit). Rows are
    ordered by visit; condition concepts are resolved from the diagnosis text.
    """
    _require(notes, ["person_id", "visit_id"], "build_condition_occurrence")
    notes = with_exam_times(notes)
    links = _exam_links(notes)
    key = ["Diagnosis", "person_id", "visit_id"]

    diagnosis = pl.col("Diagnosis")
    streams = [
        (MANUALLY_REPORTED, _manual_conditions(notes)),
        (
            STANDARD_ANNOTATION,
            _linked_conditions(annotations, "AnnExplanation", diagnosis.is_in(list(PATHOLOGICAL_BEATS)), links),
        ),
        (
            AUTOMATICALLY_DETECTED,
            _linked_conditions(
                auto_diagnoses,
                "AutoECGDiagnosis",
                diagnosis.is_not_null() & ~diagnosis.is_in(list(NON_PATHOLOGICAL_AUTO_DIAGNOSES)),
                links,
            ),
        ),
    ]

    conditions = pl.concat(
        [
            stream.unique(subset=key, keep="first", maintain_order=True).with_columns(pl.lit(label).alias("_type"))
            for label, stream in streams
        ],
        how="vertical",
    ).sort("visit_id", maintain_order=True)

    n = len(conditions)
    conditions = conditions.select(
        _sequential_ids(n).alias("condition_occurrence_id"),
        "person_id",
        pl.col("_visit_date").alias("condition_start_date"),
        pl.col("visit_id").alias("visit_occurrence_id"),
        pl.col("Diagnosis").alias("condition_source_value"),
        "_type",
    )
    conditions = conditions.with_columns(
        resolve(vocabulary, "condition_occurrence", "condition_type_concept_id", conditions["_type"]),
        resolve(vocabulary, "condition_occurrence", "condition_concept_id", conditions["condition_source_value"]),
    )
    return conform(EntityKind.CONDITION_OCCURRENCE, conditions)


# ============================================================================
# MEASUREMENT / OBSERVATION
# ============================================================================


def sampling_rates(samples: pl.DataFrame) -> pl.DataFrame:
    """
    Sampling rate (Hz) of each exam from its first two sample timestamps.

    Returns:
        DataFrame with columns FK_ID, FS (null when fewer than two samples)
    """
    heads = (
        samples.sort("ID")
        .group_by("FK_ID", maintain_order=True)
        .agg(
            pl.col("Timestamp").first().alias("_t1"),
            pl.col("Timestamp").slice(1, 1).first().alias("_t2"),
        )
    )

    def parse(column: str) -> pl.Expr:
        return _with_fraction(pl.col(column)).str.to_time(SAMPLE_TIMESTAMP_FORMAT, strict=True).cast(pl.Int64)

    try:
        heads = heads.with_columns(parse("_t1"), parse("_t2"))
    except pl.exceptions.PolarsError as e:
        raise SchemaError(f"Sample timestamps are not 'HH:MM:SS[.fff]' values: {e}") from e

    # Time casts to nanoseconds since midnight
    step = (pl.col("_t2") - pl.col("_t1")) / 1e9
    return heads.select("FK_ID", pl.when(step > 0).then(1.0 / step).otherwise(None).alias("FS"))


def collect_metrics(notes: pl.DataFrame, samples: pl.DataFrame, hrv_metrics: pl.DataFrame) -> pl.DataFrame:
    """
    Long table of numeric facts per exam: Duration, FS and every routed HRV
    metric. Missing values are dropped.

    Returns:
        DataFrame with columns procedure_id, person_id, visit_id, metric, value
    """
    notes = with_exam_times(notes)
    index = ["procedure_id", "person_id", "visit_id"]

    durations = notes.select(
        *index,
        pl.col("ID"),
        ((pl.col("_end") - pl.col("_start")).dt.total_microseconds() / 1e6).alias("Duration"),
    )
    derived = (
        _attach(durations, sampling_rates(samples).rename({"FK_ID": "ID"}), on="ID")
        .drop("ID")
        .unpivot(index=index, on=list(DERIVED_METRICS), variable_name="metric", value_name="value")
    )

    hrv_columns = [m for m in METRIC_ROUTING if m not in DERIVED_METRICS and m in hrv_metrics.columns]
    frames = [derived]
    if hrv_columns:
        hrv = hrv_metrics.select(
            pl.col("FK_ID").alias("procedure_id"), *[pl.col(c).cast(pl.Float64) for c in hrv_columns]
        )
        hrv = _attach(hrv, notes.select(*index), on="procedure_id", how="inner").unpivot(
            index=index, on=hrv_columns, variable_name="metric", value_name="value"
        )
        frames.append(hrv.select(derived.columns))

    facts = pl.concat(frames, how="vertical")
    return (
        facts.with_columns(pl.col("value").fill_nan(None))
        .filter(pl.col("value").is_not_null())
        .sort("procedure_id", maintain_order=True)
    )


@dataclass(frozen=True)
class _FactColumns:
    """Column names of one numeric-fact table (measurement or observation)."""

    id: str
    concept: str
    date: str
    type_concept: str
    datetime: str
    source_value: str
    source_concept: str
    event_id: str
    event_field: str


_FACT_COLUMNS: Dict[EntityKind, _FactColumns] = {
    EntityKind.MEASUREMENT: _FactColumns(
        id="measurement_id",
        concept="measurement_concept_id",
        date="measurement_date",
        type_concept="measurement_type_concept_id",
        datetime="measurement_datetime",
        source_value="measurement_source_value",
        source_concept="measurement_source_concept_id",
        event_id="measurement_event_id",
        event_field="meas_event_field_concept_id",
    ),
    EntityKind.OBSERVATION: _FactColumns(
        id="observation_id",
        concept="observation_concept_id",
        date="observation_date",
        type_concept="observation_type_concept_id",
        datetime="observation_datetime",
        source_value="observation_source_value",
        source_concept="observation_source_concept_id",
        event_id="observation_event_id",
        event_field="obs_event_field_concept_id",
    ),
}


def _fact_table(kind: EntityKind, facts: pl.DataFrame, vocabulary: VocabularyStore) -> pl.DataFrame:
    cols = _FACT_COLUMNS[kind]
    table = kind.value
    n = len(facts)

    rows = facts.select(
        _sequential_ids(n).alias(cols.id),
        "person_id",
        pl.col("procedure_date").alias(cols.date),
        pl.col("procedure_datetime").alias(cols.datetime),
        "value_as_number",
        "unit_source_value",
        pl.col("visit_id").alias("visit_occurrence_id"),
        pl.col("metric").alias(cols.source_value),
        pl.col("procedure_id").alias(cols.event_id),
    )
    rows = rows.with_columns(
        resolve(vocabulary, table, cols.concept, rows[cols.source_value]),
        resolve(vocabulary, table, cols.source_concept, rows[cols.source_value], strict=False),
        resolve(vocabulary, table, "unit_concept_id", rows["unit_source_value"], strict=False),
        resolve_constant(vocabulary, table, cols.type_concept, "EHRencounter", n),
        resolve_constant(vocabulary, table, cols.event_field, "procedure_occurrence", n),
    )
    return conform(kind, rows)


def build_measurements(
    notes: pl.DataFrame,
    samples: pl.DataFrame,
    hrv_metrics: pl.DataFrame,
    procedures: pl.DataFrame,
    vocabulary: VocabularyStore,
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    Numeric facts of every exam, split into measurement and observation rows
    by METRIC_ROUTING. Each row points at its procedure through the event id
    and takes its date and datetime from that procedure.

    Returns:
        (measurement table, observation table)
    """
    _require(notes, ["person_id", "visit_id", "procedure_id"], "build_measurements")

    routing = pl.DataFrame(
        {
            "metric": list(METRIC_ROUTING),
            "_table": [t.value for t, _ in METRIC_ROUTING.values()],
            "unit_source_value": [u for _, u in METRIC_ROUTING.values()],
        }
    )
    procedure_times = procedures.select(
        pl.col("procedure_occurrence_id").alias("procedure_id"), "procedure_date", "procedure_datetime"
    )

    facts = _attach(collect_metrics(notes, samples, hrv_metrics), routing, on="metric", how="inner")
    facts = _attach(facts, procedure_times, on="procedure_id").rename({"value": "value_as_number"})

    orphans = facts.filter(pl.col("procedure_date").is_null())["procedure_id"].unique().to_list()
    if orphans:
        raise ConsistencyError(f"Numeric facts reference exams without a procedure: {sorted(orphans)}")

    measurement = _fact_table(
        EntityKind.MEASUREMENT, facts.filter(pl.col("_table") == EntityKind.MEASUREMENT.value), vocabulary
    )
    observation = _fact_table(
        EntityKind.OBSERVATION, facts.filter(pl.col("_table") == EntityKind.OBSERVATION.value), vocabulary
    )
    return measurement, observation


# ============================================================================
# CUSTOM VOCABULARY
# ============================================================================

CUSTOM_VOCABULARY_ID = "ecg2omop-measures"
CUSTOM_VOCABULARY_NAME = "Additional ECG HRV measures"
CUSTOM_VOCABULARY_REFERENCE = "https://github.com/hbd-polimi-ws4/ecg2omop-public"
CUSTOM_VOCABULARY_VERSION = "2026-01-15"
CUSTOM_CONCEPT_ID_START = 2_000_000_001
CUSTOM_CONCEPT_END_DATE = datetime.date(2099, 12, 31)


@dataclass(frozen=True)
class CustomConcept:
    """A locally defined concept. Non-standard concepts name the standard concept they map to."""

    code: str
    name: str
    domain_id: str = "Measurement"
    concept_class_id: str = "Clinical Observation"
    standard: bool = True
    maps_to: Optional[int] = None


CUSTOM_CONCEPTS: Tuple[CustomConcept, ...] = (
    CustomConcept("RMSSD", "Root Mean Squared Successive Differences (RMSSD)"),
    CustomConcept("HF_POWER", "HRV Power High Frequency (HF)"),
    CustomConcept("HF_NORM", "HRV Power High Frequency (HF) normalized"),
    CustomConcept("LF_POWER", "HRV Power Low Frequency (LF)"),
    CustomConcept("LF_NORM", "HRV Power Low Frequency (LF) normalized"),
    CustomConcept("LF_TO_HF", "Ratio of HRV Low and High Frequency powers"),
    CustomConcept("VLF_POWER", "HRV Power Very Low Frequency (VLF)"),
    CustomConcept("VLF_NORM", "HRV Power Very Low Frequency (VLF) normalized"),
    CustomConcept("SD1", "Poincaré plot SD1"),
    CustomConcept("SD2", "Poincaré plot SD2"),
    CustomConcept("alpha1", "Detrended Fluctuation Analysis (DFA) alpha1"),
    CustomConcept("alpha2", "Detrended Fluctuation Analysis (DFA) alpha2"),
    CustomConcept("SampEn", "Sample entropy"),
)


def build_custom_vocabulary(
    concepts: Sequence[CustomConcept] = CUSTOM_CONCEPTS,
    today: Optional[datetime.date] = None,
) -> Tuple[pl.DataFrame, pl.DataFrame, pl.DataFrame]:
    """
    The custom vocabulary holding concepts missing from the standard vocabularies.

    Standard concepts map to themselves ("Maps to" and "Mapped from"); a
    non-standard concept "Maps to" its standard concept, which is "Mapped
    from" it.

    Returns:
        (vocabulary, concept, concept_relationship)
    """
    today = today or datetime.date.today()

    vocabulary = pl.DataFrame(
        {
            "vocabulary_id": [CUSTOM_VOCABULARY_ID],
            "vocabulary_name": [CUSTOM_VOCABULARY_NAME],
            "vocabulary_concept_id": [0],
            "vocabulary_reference": [CUSTOM_VOCABULARY_REFERENCE],
            "vocabulary_version": [CUSTOM_VOCABULARY_VERSION],
        }
    )

    concept_rows = []
    relationship_rows = []
    for offset, c in enumerate(concepts):
        concept_id = CUSTOM_CONCEPT_ID_START + offset
        concept_rows.append(
            {
                "concept_id": concept_id,
                "concept_name": c.name,
                "concept_code": c.code,
                "domain_id": c.domain_id,
                "vocabulary_id": CUSTOM_VOCABULARY_ID,
                "concept_class_id": c.concept_class_id,
                "valid_start_date": today,
                "valid_end_date": CUSTOM_CONCEPT_END_DATE,
                "standard_concept": "S" if c.standard else None,
            }
        )

        if c.standard:
            pairs = [(concept_id, concept_id, "Maps to"), (concept_id, concept_id, "Mapped from")]
        else:
            if c.maps_to is None:
                raise ConsistencyError(f"Non-standard custom concept '{c.code}' does not map to a standard concept")
            pairs = [(concept_id, c.maps_to, "Maps to"), (c.maps_to, concept_id, "Mapped from")]
        for id_1, id_2, relationship in pairs:
            relationship_rows.append(
                {
                    "concept_id_1": id_1,
                    "concept_id_2": id_2,
                    "relationship_id": relationship,
                    "valid_start_date": today,
                    "valid_end_date": CUSTOM_CONCEPT_END_DATE,
                }
            )

    concept = pl.DataFrame(concept_rows, schema=get_schema(EntityKind.CONCEPT).polars_schema)
    concept_relationship = pl.DataFrame(
        relationship_rows, schema=get_schema(EntityKind.CONCEPT_RELATIONSHIP).polars_schema
    )
    return (
        conform(EntityKind.VOCABULARY, vocabulary),
        conform(EntityKind.CONCEPT, concept),
        conform(EntityKind.CONCEPT_RELATIONSHIP, concept_relationship),
    )


# ============================================================================
# ASSEMBLY
# ============================================================================


class OMOPTables:
    """The assembled OMOP tables keyed by EntityKind, iterated in load order."""

    def __init__(self, tables: Optional[Dict[EntityKind, pl.DataFrame]] = None):
        self._tables: Dict[EntityKind, pl.DataFrame] = {}
        for kind, df in (tables or {}).items():
            self[kind] = df

    @staticmethod
    def _kind(kind: Union[EntityKind, str]) -> EntityKind:
        return kind if isinstance(kind, EntityKind) else EntityKind.from_table_name(kind)

    def __getitem__(self, kind: Union[EntityKind, str]) -> pl.DataFrame:
        return self._tables[self._kind(kind)]

    def __setitem__(self, kind: Union[EntityKind, str], df: pl.DataFrame) -> None:
        self._tables[self._kind(kind)] = df

    def __contains__(self, kind) -> bool:
        try:
            return self._kind(kind) in self._tables
        except LoadOrderError:
            return False

    def __len__(self) -> int:
        return len(self._tables)

    def __iter__(self) -> Iterator[EntityKind]:
        return iter(self.kinds())

    def kinds(self) -> List[EntityKind]:
        return [k for k in LOAD_ORDER if k in self._tables]

    def items(self) -> List[Tuple[EntityKind, pl.DataFrame]]:
        return [(k, self._tables[k]) for k in self.kinds()]

    def row_counts(self) -> Dict[str, int]:
        return {k.value: len(df) for k, df in self.items()}


def assemble(
    inputs: FlatInputs,
    vocabulary: VocabularyStore,
    verbose: bool = False,
    today: Optional[datetime.date] = None,
) -> OMOPTables:
    """
    Build all OMOP tables from the merged flat inputs.

    Args:
        inputs: Imported flat tables; notes are required, the others may be empty
        vocabulary: Vocabulary store used for every concept lookup
        verbose: Print row counts per table
        today: valid_start_date of the custom concepts (defaults to today)

    Returns:
        OMOPTables with all ten tables, strings cut to their OMOP varchar lengths
    """
    if inputs.notes is None or len(inputs.notes) == 0:
        raise ConsistencyError("Cannot assemble OMOP tables without exam notes")

    notes = FLAT_LAYOUTS[FlatKind.NOTES].complete(inputs.notes)

    person, notes = build_person(notes, vocabulary)
    observation_period = build_observation_period(notes, vocabulary)
    visit_occurrence, notes = build_visit_occurrence(notes, vocabulary)
    procedure_occurrence, notes = build_procedure_occurrence(notes, inputs.samples, vocabulary)
    condition_occurrence = build_condition_occurrence(notes, inputs.annotations, inputs.auto_diagnoses, vocabulary)
    measurement, observation = build_measurements(
        notes, inputs.samples, inputs.hrv_metrics, procedure_occurrence, vocabulary
    )
    vocab, concept, concept_relationship = build_custom_vocabulary(today=today)

    built = {
        EntityKind.VOCABULARY: vocab,
        EntityKind.CONCEPT: concept,
        EntityKind.CONCEPT_RELATIONSHIP: concept_relationship,
        EntityKind.PERSON: person,
        EntityKind.OBSERVATION_PERIOD: observation_period,
        EntityKind.VISIT_OCCURRENCE: visit_occurrence,
        EntityKind.PROCEDURE_OCCURRENCE: procedure_occurrence,
        EntityKind.CONDITION_OCCURRENCE: condition_occurrence,
        EntityKind.MEASUREMENT: measurement,
        EntityKind.OBSERVATION: observation,
    }
    tables = OMOPTables({kind: conform(kind, df, truncate=True) for kind, df in built.items()})

    if verbose:
        for name, count in tables.row_counts().items():
            print(f"  {name}: {count:,} rows")
    return tables
