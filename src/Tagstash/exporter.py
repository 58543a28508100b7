"""Export of a user's records in the versioned bundle format accepted by import."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Tagstash import repos
from Tagstash.schemas import (
    SUPPORTED_VERSIONS,
    ExportFormatV1,
    ExportFormatV2,
    ExportMetadataV1,
    ExportMetadataV2,
    ExportRecordV1,
    ExportRecordV2,
    NormalizationRulesModel,
    format_timestamp,
)

log = structlog.get_logger()


async def build_export(s: AsyncSession, user_id: str, version: str = "2.0") -> dict[str, Any]:
    """Return the owner's records as a v1.0 or v2.0 bundle, oldest first.

    v2.0 metadata carries the owner's normalization rules so a re-import into
    an account with different rules can be flagged.
    """
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported export version {version!r}")
    user = await repos.get_user(s, user_id)
    rows = await repos.list_records(s, user_id)
    exported_at = format_timestamp(datetime.now(timezone.utc))
    bundle: ExportFormatV1 | ExportFormatV2
    if version == "1.0":
        bundle = ExportFormatV1(
            version="1.0",
            records=[
                ExportRecordV1(content=r.content, created_at=format_timestamp(r.created_at))
                for r in rows
            ],
            metadata=ExportMetadataV1(exported_at=exported_at, record_count=len(rows)),
        )
    else:
        bundle = ExportFormatV2(
            version="2.0",
            records=[
                ExportRecordV2(
                    content=r.content,
                    created_at=format_timestamp(r.created_at),
                    updated_at=format_timestamp(r.updated_at),
                )
                for r in rows
            ],
            metadata=ExportMetadataV2(
                exported_at=exported_at,
                record_count=len(rows),
                normalization_rules=NormalizationRulesModel(
                    case_sensitive=user.case_sensitive if user else False,
                    remove_accents=user.remove_accents if user else True,
                ),
            ),
        )
    log.info("export.built", user_id=user_id, version=version, records=len(rows))
    return bundle.to_wire()
