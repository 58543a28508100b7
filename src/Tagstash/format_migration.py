"""Migration of validated bundles to the canonical record shape."""

from __future__ import annotations

from dataclasses import dataclass

from Tagstash.schemas import ExportFormatV1, ExportFormatV2
from Tagstash.tags import NormalizationRules


@dataclass(frozen=True)
class CanonicalRecord:
    content: str
    created_at: str
    updated_at: str


def migrate_to_canonical(bundle: ExportFormatV1 | ExportFormatV2) -> tuple[CanonicalRecord, ...]:
    """Return records in input order; that order defines each record's index.

    v1.0 records have no ``updatedAt`` and inherit ``createdAt``.
    """
    if isinstance(bundle, ExportFormatV1):
        return tuple(
            CanonicalRecord(content=r.content, created_at=r.created_at, updated_at=r.created_at)
            for r in bundle.records
        )
    return tuple(
        CanonicalRecord(content=r.content, created_at=r.created_at, updated_at=r.updated_at)
        for r in bundle.records
    )


def declared_rules(bundle: ExportFormatV1 | ExportFormatV2) -> NormalizationRules | None:
    """Normalization rules the exporting side declared, if the format carries them."""
    if isinstance(bundle, ExportFormatV2):
        rules = bundle.metadata.normalization_rules
        return NormalizationRules(
            case_sensitive=rules.case_sensitive, remove_accents=rules.remove_accents
        )
    return None
