"""
Shared fixtures: small synthetic exam tables and vocabularies.
"""

from pathlib import Path

import polars as pl
import pytest

from ecg2omop.importer import FlatInputs
from ecg2omop.schema import FLAT_LAYOUTS, STANDARD_LEADS, FlatKind
from ecg2omop.vocabulary import VocabularyStore

# ============================================================================
# BUILDERS
# ============================================================================


def make_notes(rows):
    """Notes table from a list of dicts; absent columns become nulls."""
    return make_table(FlatKind.NOTES, rows)


def make_samples(exam_ids, missing_lead=None, step="0.002"):
    """Two samples per exam, `step` seconds apart, every standard lead filled."""
    rows = []
    sample_id = 1
    for exam_id in exam_ids:
        for timestamp in ("00:00:00.000", f"00:00:{float(step):06.3f}"):
            row = {"ID": sample_id, "FK_ID": exam_id, "Timestamp": timestamp}
            for lead in STANDARD_LEADS:
                row[lead] = None if (missing_lead and missing_lead == (exam_id, lead)) else 0.1
            rows.append(row)
            sample_id += 1
    return FLAT_LAYOUTS[FlatKind.SAMPLES].complete(pl.DataFrame(rows, infer_schema_length=None))


def make_table(kind, rows):
    layout = FLAT_LAYOUTS[kind]
    if not rows:
        return layout.empty()
    return layout.complete(pl.DataFrame(rows, infer_schema_length=None))


def write_csv(path: Path, rows):
    pl.DataFrame(rows, infer_schema_length=None).write_csv(path)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def default_vocabulary():
    return VocabularyStore()


@pytest.fixture
def p1_notes():
    """Two exams of one patient on 2024-01-01, 08:00-08:10 and 09:00-09:20."""
    return make_notes(
        [
            {
                "ID": 1,
                "RecordName": "rec1",
                "DatasetName": "ptb",
                "RecordDate": "2024-01-01 08:00:00.000",
                "RecordEnd": "2024-01-01 08:10:00.000",
                "Patient": "p1",
                "Age": 50.0,
                "Sex": "M",
                "Diagnosis": "AF, SB",
            },
            {
                "ID": 2,
                "RecordName": "rec2",
                "DatasetName": "ptb",
                "RecordDate": "2024-01-01 09:00:00.000",
                "RecordEnd": "2024-01-01 09:20:00.000",
                "Patient": "p1",
                "Age": 50.0,
                "Sex": "M",
                "Diagnosis": None,
            },
        ]
    )


@pytest.fixture
def p1_inputs(p1_notes):
    return FlatInputs(
        notes=p1_notes,
        samples=make_samples([1, 2], missing_lead=(2, "Lead_V6")),
        annotations=make_table(
            FlatKind.ANNOTATIONS,
            [
                {"ID": 1, "FK_ID": 1, "Timestamp": "00:00:01.000", "AnnExplanation": "Premature ventricular contraction"},
                {"ID": 2, "FK_ID": 1, "Timestamp": "00:00:02.000", "AnnExplanation": "Premature ventricular contraction"},
                {"ID": 3, "FK_ID": 1, "Timestamp": "00:00:03.000", "AnnExplanation": "Normal beat"},
            ],
        ),
        hrv_metrics=make_table(
            FlatKind.HRV_METRICS,
            [
                {"ID": 1, "FK_ID": 1, "AVNN": 812.5, "SDNN": 40.0, "RMSSD": float("nan"), "pNN50": 0.2},
                {"ID": 2, "FK_ID": 2, "AVNN": 790.0, "SDNN": None, "RMSSD": 31.0, "pNN50": 0.1},
            ],
        ),
        auto_diagnoses=make_table(
            FlatKind.AUTO_DIAGNOSES,
            [
                {"ID": 1, "FK_ID": 1, "AutoECGDiagnosis": "AF"},
                {"ID": 2, "FK_ID": 2, "AutoECGDiagnosis": "NoAbnormalities"},
            ],
        ),
    )


@pytest.fixture
def vocab_dir(tmp_path):
    directory = tmp_path / "vocab"
    directory.mkdir()
    write_csv(
        directory / "base.csv",
        [
            {"TableName": "person", "FieldName": "gender_concept_id", "SourceTerm": "M", "ConceptID": "8507"},
            {"TableName": "person", "FieldName": "gender_concept_id", "SourceTerm": "F", "ConceptID": "8532"},
            {"TableName": "person", "FieldName": "gender_concept_id", "SourceTerm": "<missing>", "ConceptID": "8551"},
            {"TableName": "measurement", "FieldName": "unit_concept_id", "SourceTerm": "ms", "ConceptID": "8550"},
        ],
    )
    return directory
