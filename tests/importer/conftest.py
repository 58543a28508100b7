# tests/importer/conftest.py

from typing import Any

import pytest

from Tagstash.config import Settings
from Tagstash.importer import ImportCoordinator


def make_records(n: int, *, version: str = "2.0", prefix: str = "rec") -> list[dict[str, Any]]:
    records = []
    for i in range(n):
        rec: dict[str, Any] = {
            "content": f"{prefix}{i} topic{i % 7}",
            "createdAt": "2024-01-01T00:00:00Z",
        }
        if version == "2.0":
            rec["updatedAt"] = "2024-01-02T00:00:00Z"
        records.append(rec)
    return records


def make_bundle(
    n: int = 0,
    *,
    version: str = "2.0",
    records: list[dict[str, Any]] | None = None,
    case_sensitive: bool = False,
    remove_accents: bool = True,
) -> dict[str, Any]:
    recs = records if records is not None else make_records(n, version=version)
    bundle: dict[str, Any] = {"version": version, "records": recs}
    if version == "2.0":
        bundle["metadata"] = {
            "exportedAt": "2024-02-01T00:00:00Z",
            "recordCount": len(recs),
            "normalizationRules": {
                "caseSensitive": case_sensitive,
                "removeAccents": remove_accents,
            },
        }
    return bundle


@pytest.fixture
def import_settings() -> Settings:
    return Settings(
        import_chunk_size=500,
        import_max_records=50_000,
        logging_enabled=False,
    )


@pytest.fixture
def coordinator(import_settings: Settings) -> ImportCoordinator:
    return ImportCoordinator(settings=import_settings)


@pytest.fixture
def bundle_factory():
    return make_bundle


@pytest.fixture
def records_factory():
    return make_records
