"""Import bundle schema validation."""

import pytest

from Tagstash.format_validation import SchemaValidationError, validate_import_payload
from Tagstash.schemas import ExportFormatV1, ExportFormatV2, parse_timestamp


def _paths(exc: SchemaValidationError) -> set[str]:
    return {e.path for e in exc.field_errors}


def test_valid_v1_without_metadata(bundle_factory):
    bundle = validate_import_payload(bundle_factory(3, version="1.0"))
    assert isinstance(bundle, ExportFormatV1)
    assert len(bundle.records) == 3


def test_valid_v2(bundle_factory):
    bundle = validate_import_payload(bundle_factory(2))
    assert isinstance(bundle, ExportFormatV2)
    assert bundle.metadata.normalization_rules.remove_accents is True


def test_non_object_payload_reports_root():
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(["not", "an", "object"])
    assert _paths(ei.value) == {"root"}


@pytest.mark.parametrize("version", [None, "3.0", 2])
def test_unknown_or_missing_version(version):
    payload = {"records": []}
    if version is not None:
        payload["version"] = version
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(payload)
    assert "version" in _paths(ei.value)


def test_reports_every_field_path(bundle_factory):
    bundle = bundle_factory(4)
    del bundle["records"][1]["createdAt"]
    bundle["records"][3]["updatedAt"] = "yesterday"
    bundle["records"][2]["content"] = ""
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(bundle)
    paths = _paths(ei.value)
    assert {"records.1.createdAt", "records.3.updatedAt", "records.2.content"} <= paths
    assert ei.value.code == "SCHEMA_VALIDATION_FAILED"


def test_v2_requires_metadata(bundle_factory):
    bundle = bundle_factory(1)
    del bundle["metadata"]
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(bundle)
    assert "metadata" in _paths(ei.value)


def test_v2_records_require_updated_at(bundle_factory):
    bundle = bundle_factory(1)
    del bundle["records"][0]["updatedAt"]
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(bundle)
    assert "records.0.updatedAt" in _paths(ei.value)


def test_content_over_limit_rejected(bundle_factory):
    bundle = bundle_factory(1, version="1.0")
    bundle["records"][0]["content"] = "x" * 5001
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(bundle)
    assert "records.0.content" in _paths(ei.value)


@pytest.mark.parametrize(
    "value",
    [
        "2024-01-15T10:30:00Z",
        "2024-01-15T10:30:00.123Z",
        "2024-01-15T10:30:00+02:00",
        "2024-01-15T10:30:00",
    ],
)
def test_accepted_timestamps(value):
    assert parse_timestamp(value).tzinfo is not None


@pytest.mark.parametrize(
    "value",
    ["2024-13-01T00:00:00Z", "2024-01-15", "2024-01-15T10:30:00+2", "2024-01-15T25:00:00Z", ""],
)
def test_rejected_timestamps(value):
    with pytest.raises(ValueError):
        parse_timestamp(value)


@pytest.mark.parametrize(
    "value",
    ["٢٠٢٤-٠١-٠١T00:00:00Z", "2024-01-01T00:00:00Z\n"],
    ids=["arabic-indic-digits", "trailing-newline"],
)
def test_bundle_with_non_iso_timestamp_rejected(value):
    payload = {"version": "1.0", "records": [{"content": "x y", "createdAt": value}]}
    with pytest.raises(SchemaValidationError) as ei:
        validate_import_payload(payload)
    assert _paths(ei.value) == {"records.0.createdAt"}
