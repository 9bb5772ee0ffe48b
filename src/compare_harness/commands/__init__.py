from .pipeline import (
    command_build,
    command_compare,
    command_extract,
    command_isolate,
    command_list_probes,
    command_matrix,
)
from .runner import command_run

__all__ = [
    "command_build",
    "command_compare",
    "command_extract",
    "command_isolate",
    "command_list_probes",
    "command_matrix",
    "command_run",
]
