from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

import Levenshtein

from conversion_engine.conversion.schemas import (
    ExtensionFieldMappingSuggestion,
    FieldMappingSuggestion,
    MappingSuggestions,
)
from conversion_engine.core.config import get_settings
from conversion_engine.schema.base import ComposedSchema, FieldDefinition

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")


def name_tokens(name: str) -> set[str]:
    return {token.lower() for token in _SPLIT_RE.split(_CAMEL_RE.sub("_", name)) if token}


def normalize_name(name: str) -> str:
    return _SPLIT_RE.sub("", name).lower()


def name_similarity(left: str, right: str) -> float:
    """Best of edit-distance ratio on normalized names and token overlap."""

    left_norm = normalize_name(left)
    right_norm = normalize_name(right)
    max_len = max(len(left_norm), len(right_norm))
    if max_len == 0:
        return 0.0
    edit_ratio = 1.0 - (Levenshtein.distance(left_norm, right_norm) / max_len)

    left_tokens = name_tokens(left)
    right_tokens = name_tokens(right)
    union = left_tokens | right_tokens
    jaccard = len(left_tokens & right_tokens) / len(union) if union else 0.0
    return round(max(edit_ratio, jaccard), 4)


@dataclass(frozen=True, slots=True)
class _Match:
    source_index: int
    target_index: int
    confidence: float
    match_type: str


def match_fields(
    sources: Sequence[FieldDefinition],
    targets: Sequence[FieldDefinition],
    threshold: float,
) -> tuple[list[_Match], list[int], list[int]]:
    claimed_sources: set[int] = set()
    claimed_targets: set[int] = set()
    matches: list[_Match] = []

    for source_index, source in enumerate(sources):
        source_key = source.name.lower()
        for target_index, target in enumerate(targets):
            if target_index in claimed_targets:
                continue
            if target.name.lower() == source_key:
                matches.append(_Match(source_index, target_index, 1.0, "exact"))
                claimed_sources.add(source_index)
                claimed_targets.add(target_index)
                break

    candidates: list[tuple[float, int, int]] = []
    for source_index, source in enumerate(sources):
        if source_index in claimed_sources:
            continue
        for target_index, target in enumerate(targets):
            if target_index in claimed_targets:
                continue
            score = name_similarity(source.name, target.name)
            if score >= threshold:
                candidates.append((score, source_index, target_index))

    candidates.sort(key=lambda item: (-item[0], item[1], item[2]))
    for score, source_index, target_index in candidates:
        if source_index in claimed_sources or target_index in claimed_targets:
            continue
        matches.append(_Match(source_index, target_index, score, "similar"))
        claimed_sources.add(source_index)
        claimed_targets.add(target_index)

    matches.sort(key=lambda item: item.source_index)
    unmapped_sources = [index for index in range(len(sources)) if index not in claimed_sources]
    unmapped_targets = [index for index in range(len(targets)) if index not in claimed_targets]
    return matches, unmapped_sources, unmapped_targets


class MappingSuggestionEngine:
    """Authoring aid: proposes field mappings between two composed schemas."""

    def __init__(self, threshold: float | None = None) -> None:
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        if self._threshold is not None:
            return self._threshold
        return get_settings().mapping_similarity_threshold

    def suggest(self, source_schema: ComposedSchema, target_schema: ComposedSchema) -> MappingSuggestions:
        threshold = self.threshold
        source_base = source_schema.base_fields
        target_base = target_schema.base_fields
        base_matches, base_unmapped_sources, base_unmapped_targets = match_fields(source_base, target_base, threshold)

        source_ext = source_schema.extension_fields
        target_ext = target_schema.extension_fields
        ext_matches, ext_unmapped_sources, ext_unmapped_targets = match_fields(source_ext, target_ext, threshold)

        field_suggestions = [
            FieldMappingSuggestion(
                source_field=source_base[match.source_index].name,
                target_field=target_base[match.target_index].name,
                confidence=match.confidence,
                match_type=match.match_type,
            )
            for match in base_matches
        ]
        extension_suggestions = [
            ExtensionFieldMappingSuggestion(
                source_field=source_ext[match.source_index].name,
                target_field=target_ext[match.target_index].name,
                confidence=match.confidence,
                match_type=match.match_type,
                source_field_type=source_ext[match.source_index].field_type.value,
                target_field_type=target_ext[match.target_index].field_type.value,
            )
            for match in ext_matches
        ]

        confidences = [item.confidence for item in field_suggestions] + [item.confidence for item in extension_suggestions]
        confidence_score = round(sum(confidences) / len(confidences), 4) if confidences else 0.0

        return MappingSuggestions(
            source_entity=source_schema.entity_table,
            target_entity=target_schema.entity_table,
            field_suggestions=field_suggestions,
            extension_field_suggestions=extension_suggestions,
            unmapped_source_fields=[source_base[index].name for index in base_unmapped_sources],
            unmapped_target_fields=[target_base[index].name for index in base_unmapped_targets],
            unmapped_source_extension_fields=[source_ext[index].name for index in ext_unmapped_sources],
            unmapped_target_extension_fields=[target_ext[index].name for index in ext_unmapped_targets],
            confidence_score=confidence_score,
        )


mapping_suggestion_engine = MappingSuggestionEngine()
