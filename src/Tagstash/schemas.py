# schemas.py

import enum
import re
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    StrictBool,
    TypeAdapter,
)
from pydantic.alias_generators import to_camel

MAX_CONTENT_LENGTH = 5000

_ISO8601_RE = re.compile(
    r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"T(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})(?:\.(?P<fraction>\d{1,9}))?"
    r"(?P<tz>Z|[+-](?P<tzh>\d{2}):(?P<tzm>\d{2}))?",
    re.ASCII,
)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; the offset is optional, naive values are UTC.

    Raises ValueError for anything that is not a well-formed, in-range timestamp.
    """
    m = _ISO8601_RE.fullmatch(value) if isinstance(value, str) else None
    if m is None:
        raise ValueError("Must be a valid ISO-8601 timestamp")
    tz = timezone.utc
    if m.group("tz") and m.group("tz") != "Z":
        tzh, tzm = int(m.group("tzh")), int(m.group("tzm"))
        if tzh > 23 or tzm > 59:
            raise ValueError("Must be a valid ISO-8601 timestamp")
        sign = -1 if m.group("tz").startswith("-") else 1
        tz = timezone(sign * timedelta(hours=tzh, minutes=tzm))
    fraction = (m.group("fraction") or "0").ljust(6, "0")[:6]
    try:
        return datetime(
            int(m.group("year")),
            int(m.group("month")),
            int(m.group("day")),
            int(m.group("hour")),
            int(m.group("minute")),
            int(m.group("second")),
            int(fraction),
            tzinfo=tz,
        )
    except ValueError as exc:
        raise ValueError("Must be a valid ISO-8601 timestamp") from exc


def _check_timestamp(value: str) -> str:
    parse_timestamp(value)
    return value


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


IsoTimestamp = Annotated[str, AfterValidator(_check_timestamp)]
RecordContent = Annotated[
    str,
    Field(
        min_length=1,
        max_length=MAX_CONTENT_LENGTH,
    ),
]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -----------------------------
# Import / export bundle formats
# -----------------------------


class ExportRecordV1(WireModel):
    content: RecordContent
    created_at: IsoTimestamp


class ExportRecordV2(WireModel):
    content: RecordContent
    created_at: IsoTimestamp
    updated_at: IsoTimestamp


class NormalizationRulesModel(WireModel):
    case_sensitive: StrictBool
    remove_accents: StrictBool


class ExportMetadataV1(WireModel):
    exported_at: IsoTimestamp | None = None
    record_count: NonNegativeInt | None = None


class ExportMetadataV2(WireModel):
    exported_at: IsoTimestamp
    record_count: NonNegativeInt
    normalization_rules: NormalizationRulesModel


class ExportFormatV1(WireModel):
    version: Literal["1.0"]
    records: list[ExportRecordV1]
    metadata: ExportMetadataV1 | None = None


class ExportFormatV2(WireModel):
    version: Literal["2.0"]
    records: list[ExportRecordV2]
    metadata: ExportMetadataV2


ImportBundle = Annotated[ExportFormatV1 | ExportFormatV2, Field(discriminator="version")]
import_bundle_adapter: TypeAdapter[ExportFormatV1 | ExportFormatV2] = TypeAdapter(ImportBundle)

SUPPORTED_VERSIONS = ("1.0", "2.0")


# -----------------------------
# Error recovery wire models
# -----------------------------


class ErrorSeverity(str, enum.Enum):
    error = "error"
    warning = "warning"
    info = "info"


class RepairSuggestionType(str, enum.Enum):
    duplicate_update = "duplicate_update"
    date_format = "date_format"
    remove_empty = "remove_empty"
    split_batch = "split_batch"
    normalize_content = "normalize_content"
    retry = "retry"
    contact_support = "contact_support"


class RepairSuggestion(WireModel):
    type: RepairSuggestionType
    message: str
    example: str | None = None
    action: str | None = None


class ErrorLogEntry(WireModel):
    record_index: int
    record_content: str | None = None
    error_code: str
    error_message: str
    timestamp: str
    chunk_number: int | None = None
    severity: ErrorSeverity
    suggestion: RepairSuggestion | None = None


class ErrorSummary(WireModel):
    total_errors: int
    errors_by_type: dict[str, int]
    errors_by_severity: dict[str, int]
    affected_records: list[int]
    successful_records: int
    failed_records: int


class ResumeInfo(WireModel):
    session_id: str
    last_processed_index: int
    remaining_records: int
    estimated_time: int | None = None


class ChunkRollbackInfo(WireModel):
    chunk_number: int
    chunk_size: int
    start_index: int
    end_index: int
    reason: str
    records_affected: int


class ImportResult(WireModel):
    imported: NonNegativeInt
    skipped: NonNegativeInt
    errors: list[str]
    session_id: str | None = None
    status: str | None = None


class ImportErrorResponse(WireModel):
    success: Literal[False] = False
    session_id: str
    can_resume: bool
    error_summary: ErrorSummary
    errors: list[ErrorLogEntry]
    repair_suggestions: list[RepairSuggestion]
    resume_info: ResumeInfo | None = None


class RecoveryOptions(WireModel):
    action: Literal["resume", "retry", "cancel"]
    session_id: str
    skip_errors: bool = False
    start_from_index: NonNegativeInt | None = None
    # The original bundle; required to resume since records are not stored until committed
    data: dict[str, Any] | None = None


class ImportSessionView(WireModel):
    session_id: str
    status: str
    total_records: int
    processed_records: int
    imported_records: int
    skipped_records: int
    failed_records: int
    last_processed_index: int | None = None
    created_at: str
    updated_at: str
    error_summary: ErrorSummary | None = None
    resume_info: ResumeInfo | None = None
