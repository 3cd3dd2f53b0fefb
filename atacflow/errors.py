# atacflow/errors.py
from __future__ import annotations
from typing import Optional


class AtacflowError(RuntimeError): ...


class ConfigError(AtacflowError):
    """Bad or inconsistent run configuration, raised before anything runs."""


class GraphBuildError(AtacflowError):
    """A graph node referenced an upstream node or output slot that was never built."""


class TaskFailure(AtacflowError):
    """
    External tool exited non-zero, or a declared output is missing/ambiguous.
    Local to one node: its dependents are skipped, other branches keep going.
    """

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        returncode: Optional[int] = None,
        diagnostics: str = "",
    ):
        super().__init__(message)
        self.node_id = node_id
        self.returncode = returncode
        self.diagnostics = diagnostics
