"""
Exceptions raised by the ecg2omop transform and load stages.

Every error is fatal for the current run: the pipeline never guesses a
concept mapping or silently drops data it cannot place.
"""


class ECG2OMOPError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(ECG2OMOPError):
    """Vocabulary documents or pipeline configuration are missing, unreadable or ambiguous."""


class ResolutionError(ECG2OMOPError):
    """One or more source terms have no concept under strict resolution."""

    def __init__(self, table_name: str, field_name: str, unmatched):
        self.table_name = table_name
        self.field_name = field_name
        self.unmatched = list(unmatched)
        terms = ", ".join(repr(t) for t in self.unmatched)
        super().__init__(
            f"Vocabularies lack concept ids for the following source terms of "
            f"{table_name}.{field_name}: {terms}"
        )


class ConsistencyError(ECG2OMOPError):
    """A parent table, id map or foreign-key column required by a dependent step is missing."""


class SchemaError(ECG2OMOPError):
    """A table's columns or types do not match the expected layout."""


class LoadOrderError(ECG2OMOPError):
    """A table outside the fixed load order was presented to the loader."""
