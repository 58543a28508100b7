"""Base exception for the import pipeline."""

from __future__ import annotations


class ImporterError(Exception):
    """Base class for import failures surfaced to callers.

    ``code`` is the machine-readable error code carried into responses.
    """

    code: str = "IMPORT_FAILED"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)
