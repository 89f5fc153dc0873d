"""Transform flat ECG exam tables into OMOP CDM and load them incrementally."""

__version__ = "0.1.0"

from ecg2omop.assembler import OMOPTables, assemble
from ecg2omop.errors import (
    ConfigurationError,
    ConsistencyError,
    ECG2OMOPError,
    LoadOrderError,
    ResolutionError,
    SchemaError,
)
from ecg2omop.importer import FlatInputs, import_all, import_tables
from ecg2omop.loader import IncrementalLoader, LoadResult, load_tables
from ecg2omop.schema import LOAD_ORDER, EntityKind, FlatKind
from ecg2omop.store import OMOPStore
from ecg2omop.vocabulary import VocabularyStore, resolve

__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "ECG2OMOPError",
    "EntityKind",
    "FlatInputs",
    "FlatKind",
    "IncrementalLoader",
    "LOAD_ORDER",
    "LoadOrderError",
    "LoadResult",
    "OMOPStore",
    "OMOPTables",
    "ResolutionError",
    "SchemaError",
    "VocabularyStore",
    "assemble",
    "import_all",
    "import_tables",
    "load_tables",
    "resolve",
]
