"""Schema validation for import bundles.

Validation is pure: it never touches storage, and every violated field is
reported on its own path instead of as one opaque message.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from Tagstash.errors import ImporterError
from Tagstash.schemas import (
    SUPPORTED_VERSIONS,
    ExportFormatV1,
    ExportFormatV2,
    import_bundle_adapter,
)

ROOT_PATH = "root"


@dataclass(frozen=True)
class FieldError:
    path: str
    message: str

    def to_wire(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


class SchemaValidationError(ImporterError):
    code = "SCHEMA_VALIDATION_FAILED"

    def __init__(self, field_errors: list[FieldError]) -> None:
        self.field_errors = list(field_errors)
        summary = "; ".join(f"{e.path}: {e.message}" for e in self.field_errors[:5])
        if len(self.field_errors) > 5:
            summary += f"; ... {len(self.field_errors) - 5} more"
        super().__init__(f"Import payload failed validation: {summary}")


def _path_of(loc: tuple[Any, ...]) -> str:
    parts = list(loc)
    # Tagged unions prefix the location with the matched tag
    if parts and parts[0] in SUPPORTED_VERSIONS:
        parts = parts[1:]
    if not parts:
        return ROOT_PATH
    return ".".join(str(p) for p in parts)


def _message_of(err: Mapping[str, Any]) -> str:
    etype = err.get("type")
    if etype in ("union_tag_not_found", "union_tag_invalid"):
        return f"Unsupported version; expected one of {', '.join(SUPPORTED_VERSIONS)}"
    msg = str(err.get("msg", "Invalid value"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, ") :]
    return msg


def field_errors_from(exc: ValidationError) -> list[FieldError]:
    out: list[FieldError] = []
    for err in exc.errors(include_url=False):
        if err.get("type") in ("union_tag_not_found", "union_tag_invalid"):
            out.append(FieldError("version", _message_of(err)))
            continue
        out.append(FieldError(_path_of(tuple(err.get("loc", ()))), _message_of(err)))
    return out


def validate_import_payload(payload: Any) -> ExportFormatV1 | ExportFormatV2:
    """Validate a decoded JSON payload as a v1.0 or v2.0 import bundle.

    Raises SchemaValidationError with one FieldError per violated path.
    """
    if not isinstance(payload, Mapping):
        raise SchemaValidationError([FieldError(ROOT_PATH, "Expected a JSON object")])
    try:
        return import_bundle_adapter.validate_python(dict(payload))
    except ValidationError as exc:
        raise SchemaValidationError(field_errors_from(exc)) from exc
