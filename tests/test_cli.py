"""
End-to-end tests of the command-line interface on a small extracted dataset.
"""

import json

import pytest

from conftest import write_csv
from ecg2omop.cli import build_parser, main, resolve_config
from ecg2omop.schema import LOAD_ORDER, STANDARD_LEADS
from ecg2omop.store import OMOPStore


@pytest.fixture
def extracted(tmp_path):
    directory = tmp_path / "extracted"
    directory.mkdir()
    write_csv(
        directory / "comm_ptb.csv",
        [
            {
                "ID": 10,
                "RecordName": "s0010",
                "DatasetName": "ptb",
                "RecordDate": "2024-03-05 14:00:00",
                "RecordEnd": "2024-03-05 14:00:10.5",
                "Patient": "patient001",
                "Age": 81,
                "Sex": "female",
                "Diagnosis": "Myocardial infarction",
            }
        ],
    )
    samples = []
    for i, timestamp in enumerate(["00:00:00.000", "00:00:00.001", "00:00:00.002"], start=1):
        row = {"ID": i, "FK_ID": 10, "Timestamp": timestamp}
        row.update({lead: 0.5 for lead in STANDARD_LEADS})
        samples.append(row)
    write_csv(directory / "samp_ptb.csv", samples)
    return directory


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_flags_override_config_file(tmp_path):
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps({"input_dir": "a", "output_dir": "b", "output_format": "parquet"}))
    args = build_parser().parse_args(["transform", "--config", str(path), "--input_dir", "c"])
    config = resolve_config(args)

    assert config.input_dir == "c"
    assert config.output_dir == "b"
    assert config.output_format == "parquet"
    assert not config.verbose


def test_transform_writes_tables(tmp_path, extracted):
    out = tmp_path / "omop"
    code = main(["transform", "--input_dir", str(extracted), "--output_dir", str(out)])

    assert code == 0
    assert sorted(p.stem for p in out.glob("*.csv")) == sorted(k.value for k in LOAD_ORDER)
    assert "female" in (out / "person.csv").read_text()


def test_transform_then_load(tmp_path, extracted, capsys):
    out = tmp_path / "omop"
    url = f"sqlite:///{tmp_path / 'omop.db'}"

    assert main(["transform", "--input_dir", str(extracted), "--output_dir", str(out), "--format", "parquet"]) == 0
    assert main(["load", "--tables_dir", str(out), "--database_url", url, "--create_tables"]) == 0
    assert "Load summary" in capsys.readouterr().out

    store = OMOPStore(url)
    try:
        assert store.count("person") == 1
        assert store.count("procedure_occurrence") == 1
        assert store.count("condition_occurrence") == 1
    finally:
        store.dispose()

    # a second load finds everything already present
    assert main(["load", "--tables_dir", str(out), "--database_url", url]) == 0
    assert "already present" in capsys.readouterr().out
    store = OMOPStore(url)
    try:
        assert store.count("person") == 1
        assert store.count("measurement") == 1
    finally:
        store.dispose()


def test_run_with_dry_run(tmp_path, extracted):
    url = f"sqlite:///{tmp_path / 'omop.db'}"
    store = OMOPStore(url)
    store.create_tables()
    store.dispose()

    code = main(["run", "--input_dir", str(extracted), "--database_url", url, "--dry_run"])
    assert code == 0

    store = OMOPStore(url)
    try:
        assert store.count("person") == 0
    finally:
        store.dispose()


def test_errors_return_nonzero(tmp_path, extracted, capsys):
    assert main(["transform", "--input_dir", str(extracted)]) == 1
    assert "ConfigurationError" in capsys.readouterr().err

    assert main(["transform", "--input_dir", str(tmp_path / "nowhere"), "--output_dir", str(tmp_path / "out")]) == 1
    assert "ConsistencyError" in capsys.readouterr().err

    # no OMOP tables in the store yet
    url = f"sqlite:///{tmp_path / 'omop.db'}"
    assert main(["run", "--input_dir", str(extracted), "--database_url", url]) == 1
    assert "create them first" in capsys.readouterr().err
