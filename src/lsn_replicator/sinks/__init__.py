"""Change sinks and replication state persistence."""

from .change_file import STATE_FILE_NAME, JsonlChangeSink
from .state_file import StateFileStore, dumps_properties, loads_properties

__all__ = [
    "JsonlChangeSink",
    "STATE_FILE_NAME",
    "StateFileStore",
    "dumps_properties",
    "loads_properties",
]
