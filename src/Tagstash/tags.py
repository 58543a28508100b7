"""Tag extraction and normalization for record content.

Records are free text; every whitespace-separated token is a tag. The
normalized tag set of a record, scoped to its owner, is the duplicate key used
by the importer, so normalization must stay deterministic: the same content
under the same rules always produces the same normalized tags and the same
``tag_key``. Changing the algorithm requires bumping
``TAG_NORMALIZATION_VERSION`` so stored keys can be told apart.
"""

from __future__ import annotations

import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from Tagstash.canonical_json import compute_canonical_hash

TAG_NORMALIZATION_VERSION = 2


@dataclass(frozen=True)
class NormalizationRules:
    """Per-owner tag normalization settings."""

    case_sensitive: bool = False
    remove_accents: bool = True

    def to_wire(self) -> dict[str, bool]:
        return {"caseSensitive": self.case_sensitive, "removeAccents": self.remove_accents}


DEFAULT_RULES = NormalizationRules()


def extract_tags(content: str) -> list[str]:
    """Split content on runs of whitespace, dropping empty tokens, order preserved."""
    return content.split()


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return unicodedata.normalize("NFC", stripped)


def normalize_tag(tag: str, rules: NormalizationRules = DEFAULT_RULES) -> str:
    result = unicodedata.normalize("NFC", tag)
    if rules.remove_accents:
        result = strip_accents(result)
    if not rules.case_sensitive:
        result = result.lower()
    return result


def normalize_tags(
    tags: Iterable[str], rules: NormalizationRules = DEFAULT_RULES
) -> list[str]:
    """Normalize each tag; tags that normalize to nothing (a lone accent) are dropped."""
    normalized = (normalize_tag(tag, rules) for tag in tags)
    return [tag for tag in normalized if tag]


def duplicate_key(normalized_tags: Sequence[str]) -> str:
    """Hex digest identifying a normalized tag *set* (order and repeats ignored)."""
    payload = {
        "v": TAG_NORMALIZATION_VERSION,
        "tags": sorted(set(normalized_tags)),
    }
    return compute_canonical_hash(payload).hex()


def tag_key_for_content(content: str, rules: NormalizationRules = DEFAULT_RULES) -> str:
    return duplicate_key(normalize_tags(extract_tags(content), rules))
