"""
Unit tests for assembler.py

Builds OMOP tables from small synthetic exam tables, using the vocabularies
shipped with the package.
"""

import datetime

import polars as pl
import pytest

from conftest import make_notes, make_samples, make_table
from ecg2omop.assembler import (
    CUSTOM_CONCEPTS,
    CustomConcept,
    assemble,
    build_condition_occurrence,
    build_custom_vocabulary,
    build_measurements,
    build_person,
    build_procedure_occurrence,
    build_visit_occurrence,
    classify_procedures,
    sampling_rates,
)
from ecg2omop.errors import ConsistencyError, ResolutionError
from ecg2omop.importer import FlatInputs
from ecg2omop.schema import FLAT_LAYOUTS, LOAD_ORDER, EntityKind, FlatKind, get_schema

DAY = datetime.date(2024, 1, 1)


def _exam(exam_id, start, end, patient="p1", **extra):
    row = {
        "ID": exam_id,
        "RecordName": f"rec{exam_id}",
        "DatasetName": "ptb",
        "RecordDate": start,
        "RecordEnd": end,
        "Patient": patient,
        "Age": 50.0,
        "Sex": "M",
    }
    row.update(extra)
    return row


# ============================================================================
# SCENARIO P1
# ============================================================================


def test_p1_two_exams_same_day(p1_inputs, default_vocabulary):
    """Two exams of one patient on one day: one person, period and visit, two procedures."""
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)

    person = tables[EntityKind.PERSON]
    assert len(person) == 1
    assert person.row(0, named=True) == {
        "person_id": 1,
        "gender_concept_id": 8507,
        "year_of_birth": 1974,
        "race_concept_id": 0,
        "ethnicity_concept_id": 0,
        "person_source_value": "p1",
        "gender_source_value": "M",
        "race_source_value": "unknown",
        "ethnicity_source_value": "unknown",
    }

    period = tables[EntityKind.OBSERVATION_PERIOD]
    assert len(period) == 1
    assert period["observation_period_start_date"][0] == DAY
    assert period["observation_period_end_date"][0] == DAY
    assert period["period_type_concept_id"][0] == 32827

    visits = tables[EntityKind.VISIT_OCCURRENCE]
    assert len(visits) == 1
    assert visits["visit_start_date"][0] == DAY
    assert visits["visit_end_date"][0] == DAY
    assert visits["visit_concept_id"][0] == 32036

    procedures = tables[EntityKind.PROCEDURE_OCCURRENCE]
    assert procedures["procedure_occurrence_id"].to_list() == [1, 2]
    assert procedures["visit_occurrence_id"].to_list() == [1, 1]
    assert procedures["person_id"].to_list() == [1, 1]
    assert procedures["procedure_source_value"].to_list() == ["ptb/rec1", "ptb/rec2"]
    assert procedures["procedure_datetime"][0] == datetime.datetime(2024, 1, 1, 8, 0, 0)
    assert procedures["procedure_end_datetime"][1] == datetime.datetime(2024, 1, 1, 9, 20, 0)


def test_assemble_returns_every_table_in_schema_layout(p1_inputs, default_vocabulary):
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)

    assert tables.kinds() == list(LOAD_ORDER)
    for kind, df in tables.items():
        assert df.columns == get_schema(kind).columns


def test_assemble_requires_notes(default_vocabulary):
    empty = FlatInputs(notes=FLAT_LAYOUTS[FlatKind.NOTES].empty())
    with pytest.raises(ConsistencyError):
        assemble(empty, default_vocabulary)


# ============================================================================
# PERSON / VISIT
# ============================================================================


def test_person_identity_falls_back_to_record_and_dataset(default_vocabulary):
    notes = make_notes(
        [
            _exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:10:00.000", patient=None, Age=None, Sex=None),
            _exam(2, "2024-01-02 08:00:00.000", "2024-01-02 08:10:00.000", patient="p9"),
            _exam(3, "2024-01-03 08:00:00.000", "2024-01-03 08:10:00.000", patient="p9"),
        ]
    )
    person, notes = build_person(notes, default_vocabulary)

    assert person["person_source_value"].to_list() == ["rec1_ptb", "p9"]
    assert person["year_of_birth"].to_list() == [-1, 1974]
    assert person["gender_source_value"].to_list() == ["unknown", "M"]
    assert person["gender_concept_id"].to_list() == [8551, 8507]
    assert notes["person_id"].to_list() == [1, 2, 2]


def test_visits_collapse_on_calendar_date(default_vocabulary):
    notes = make_notes(
        [
            _exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:10:00.000"),
            _exam(2, "2024-01-01 23:00:00.000", "2024-01-01 23:10:00.000"),
            _exam(3, "2024-01-02 08:00:00.000", "2024-01-02 08:10:00.000"),
        ]
    )
    _, notes = build_person(notes, default_vocabulary)
    visits, notes = build_visit_occurrence(notes, default_vocabulary)

    assert len(visits) == 2
    assert visits["visit_start_date"].to_list() == [DAY, datetime.date(2024, 1, 2)]
    assert visits["visit_end_date"].to_list() == visits["visit_start_date"].to_list()
    assert notes["visit_id"].to_list() == [1, 1, 2]


def test_builders_require_parent_keys(p1_notes, default_vocabulary):
    with pytest.raises(ConsistencyError):
        build_visit_occurrence(p1_notes, default_vocabulary)

    _, notes = build_person(p1_notes, default_vocabulary)
    with pytest.raises(ConsistencyError):
        build_procedure_occurrence(notes, make_samples([1, 2]), default_vocabulary)


# ============================================================================
# PROCEDURE
# ============================================================================


def test_procedure_classification():
    notes = make_notes(
        [
            _exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:10:00.000"),
            _exam(2, "2024-01-01 09:00:00.000", "2024-01-01 09:45:00.000"),
            _exam(3, "2024-01-01 10:00:00.000", "2024-01-01 10:05:00.000"),
            _exam(4, "2024-01-01 11:00:00.000", "2024-01-01 11:05:00.000"),
        ]
    )
    samples = make_samples([1, 2, 3], missing_lead=(3, "Lead_aVL"))

    # exam 4 has no samples at all
    assert classify_procedures(notes, samples).to_list() == ["12LeadECG", "HolterECG", "AmbulatoryECG", "AmbulatoryECG"]


def test_holter_threshold_ignores_leads():
    notes = make_notes(
        [
            _exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:30:00.000"),
            _exam(2, "2024-01-01 09:00:00.000", "2024-01-01 09:29:59.999"),
            _exam(3, "2024-01-01 10:00:00.000", "2024-01-01 10:45:00.000"),
            _exam(4, "2024-01-01 11:00:00.000", "2024-01-01 11:30:00.000"),
        ]
    )
    samples = make_samples([1, 2, 3], missing_lead=(3, "Lead_V1"))

    # exactly 30 minutes is Holter, with or without complete leads
    assert classify_procedures(notes, samples).to_list() == ["HolterECG", "12LeadECG", "HolterECG", "HolterECG"]


def test_procedure_concepts_resolved(p1_inputs, default_vocabulary):
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)
    procedures = tables[EntityKind.PROCEDURE_OCCURRENCE]

    assert procedures["procedure_concept_id"].to_list() == [4163872, 4304457]
    assert procedures["procedure_type_concept_id"].to_list() == [32827, 32827]


# ============================================================================
# CONDITION
# ============================================================================


def test_condition_streams(p1_inputs, default_vocabulary):
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)
    conditions = tables[EntityKind.CONDITION_OCCURRENCE]

    assert conditions["condition_source_value"].to_list() == ["AF", "SB", "Premature ventricular contraction", "AF"]
    assert conditions["condition_type_concept_id"].to_list() == [32817, 32817, 32880, 32882]
    assert conditions["condition_concept_id"].to_list() == [313217, 4171683, 4088217, 313217]
    assert conditions["condition_occurrence_id"].to_list() == [1, 2, 3, 4]
    assert conditions["visit_occurrence_id"].to_list() == [1, 1, 1, 1]
    assert conditions["condition_start_date"].to_list() == [DAY] * 4


def test_manual_diagnoses_split_and_deduplicated(default_vocabulary):
    notes = make_notes(
        [
            _exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:10:00.000", Diagnosis=" AF ,, RBBB"),
            _exam(2, "2024-01-01 09:00:00.000", "2024-01-01 09:10:00.000", Diagnosis="AF"),
        ]
    )
    _, notes = build_person(notes, default_vocabulary)
    _, notes = build_visit_occurrence(notes, default_vocabulary)
    conditions = build_condition_occurrence(
        notes,
        make_table(FlatKind.ANNOTATIONS, []),
        make_table(FlatKind.AUTO_DIAGNOSES, []),
        default_vocabulary,
    )

    # Same diagnosis, person and visit is reported once
    assert conditions["condition_source_value"].to_list() == ["AF", "RBBB"]


def test_unknown_diagnosis_is_a_resolution_error(default_vocabulary):
    notes = make_notes([_exam(1, "2024-01-01 08:00:00.000", "2024-01-01 08:10:00.000", Diagnosis="Mystery syndrome")])
    _, notes = build_person(notes, default_vocabulary)
    _, notes = build_visit_occurrence(notes, default_vocabulary)

    with pytest.raises(ResolutionError) as excinfo:
        build_condition_occurrence(
            notes, make_table(FlatKind.ANNOTATIONS, []), make_table(FlatKind.AUTO_DIAGNOSES, []), default_vocabulary
        )
    assert excinfo.value.unmatched == ["Mystery syndrome"]
    assert excinfo.value.field_name == "condition_concept_id"


# ============================================================================
# MEASUREMENT / OBSERVATION
# ============================================================================


def test_sampling_rate_from_first_two_samples():
    rates = sampling_rates(make_samples([1, 2], step="0.004")).sort("FK_ID")
    assert rates["FS"].to_list() == pytest.approx([250.0, 250.0])


def test_measurements_and_observations(p1_inputs, default_vocabulary):
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)
    measurement = tables[EntityKind.MEASUREMENT]
    observation = tables[EntityKind.OBSERVATION]

    assert measurement["measurement_source_value"].to_list() == ["Duration", "AVNN", "SDNN", "Duration", "AVNN", "RMSSD"]
    assert measurement["value_as_number"].to_list() == pytest.approx([600.0, 812.5, 40.0, 1200.0, 790.0, 31.0])
    assert measurement["unit_source_value"].to_list() == ["s", "ms", "ms", "s", "ms", "ms"]
    assert measurement["unit_concept_id"].to_list() == [8555, 8550, 8550, 8555, 8550, 8550]
    assert measurement["measurement_event_id"].to_list() == [1, 1, 1, 2, 2, 2]
    assert measurement["visit_occurrence_id"].to_list() == [1] * 6
    assert measurement["meas_event_field_concept_id"].unique().to_list() == [1147082]
    assert measurement["measurement_concept_id"][5] == 2000000001
    assert measurement["measurement_id"].to_list() == [1, 2, 3, 4, 5, 6]
    assert measurement["measurement_datetime"][3] == datetime.datetime(2024, 1, 1, 9, 0, 0)

    assert observation["observation_source_value"].to_list() == ["FS", "FS"]
    assert observation["value_as_number"].to_list() == pytest.approx([500.0, 500.0])
    assert observation["observation_concept_id"].to_list() == [4117495, 4117495]
    assert observation["observation_source_concept_id"].to_list() == [37533243, 37533243]
    assert observation["unit_concept_id"].to_list() == [9521, 9521]
    assert observation["observation_event_id"].to_list() == [1, 2]


def test_unmapped_unit_is_null(p1_inputs, default_vocabulary):
    p1_inputs.hrv_metrics = make_table(FlatKind.HRV_METRICS, [{"ID": 1, "FK_ID": 1, "alpha1": 1.1}])
    tables = assemble(p1_inputs, default_vocabulary, today=DAY)
    measurement = tables[EntityKind.MEASUREMENT].filter(pl.col("measurement_source_value") == "alpha1")

    assert measurement["unit_source_value"].to_list() == ["a.u."]
    assert measurement["unit_concept_id"].to_list() == [None]
    assert measurement["measurement_source_concept_id"].to_list() == [None]


def test_measurements_require_procedures(p1_notes, default_vocabulary):
    _, notes = build_person(p1_notes, default_vocabulary)
    _, notes = build_visit_occurrence(notes, default_vocabulary)
    with pytest.raises(ConsistencyError):
        build_measurements(
            notes,
            make_samples([1, 2]),
            make_table(FlatKind.HRV_METRICS, []),
            pl.DataFrame(),
            default_vocabulary,
        )


# ============================================================================
# CUSTOM VOCABULARY
# ============================================================================


def test_custom_vocabulary():
    vocabulary, concept, relationship = build_custom_vocabulary(today=DAY)

    assert vocabulary["vocabulary_id"].to_list() == ["ecg2omop-measures"]
    assert vocabulary["vocabulary_concept_id"].to_list() == [0]
    assert len(concept) == len(CUSTOM_CONCEPTS) == 13
    assert concept["concept_id"].to_list() == list(range(2000000001, 2000000014))
    assert concept["concept_code"][0] == "RMSSD"
    assert concept["standard_concept"].unique().to_list() == ["S"]
    assert concept["valid_end_date"].unique().to_list() == [datetime.date(2099, 12, 31)]

    assert len(relationship) == 26
    first = relationship.head(2)
    assert first["concept_id_1"].to_list() == [2000000001, 2000000001]
    assert first["concept_id_2"].to_list() == [2000000001, 2000000001]
    assert first["relationship_id"].to_list() == ["Maps to", "Mapped from"]


def test_non_standard_custom_concept_maps_to_standard():
    concepts = [CustomConcept("QTc_custom", "Custom QTc", standard=False, maps_to=3020109)]
    _, concept, relationship = build_custom_vocabulary(concepts, today=DAY)

    assert concept["standard_concept"].to_list() == [None]
    assert relationship.select("concept_id_1", "concept_id_2", "relationship_id").rows() == [
        (2000000001, 3020109, "Maps to"),
        (3020109, 2000000001, "Mapped from"),
    ]

    with pytest.raises(ConsistencyError):
        build_custom_vocabulary([CustomConcept("X", "No target", standard=False)], today=DAY)
