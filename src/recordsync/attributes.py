"""
Attribute normalizer.

Groups flat (entity_id, key, value) attribute rows into a per-entity
multimap of key -> ordered list of values and compares two multimaps as
bags. A key that appears three times for an entity yields a three element
list; rows are never dropped or deduplicated.

Example:
    >>> rows = [AttributeRow(1, "k", "a"), AttributeRow(1, "k", "a"), AttributeRow(1, "k", "b")]
    >>> normalize_attribute_rows(rows)
    {1: {'k': ['a', 'a', 'b']}}
    >>> multiset_difference(["a", "a", "b"], ["a", "b"])
    ['a']
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Collection, Iterable, Sequence

from recordsync.models import AttributeRow, AttributeValue

AttributeMultimap = dict[str, list[AttributeValue]]


def normalize_attribute_rows(rows: Iterable[AttributeRow]) -> dict[int, AttributeMultimap]:
    """
    Group attribute rows per entity and per key.

    Rows are usually sorted by (entity_id, key) but grouping does not
    depend on it: values for a key keep the order the rows arrive in.

    Args:
        rows: Flat attribute rows.

    Returns:
        Mapping of entity_id -> {key -> [values...]}.
    """
    grouped: dict[int, AttributeMultimap] = {}
    for row in rows:
        grouped.setdefault(row.entity_id, {}).setdefault(row.key, []).append(row.value)
    return grouped


def to_multimap(
    rows: Iterable[AttributeRow],
    excluded_keys: Collection[str] = (),
) -> AttributeMultimap:
    """Group the rows of a single entity, skipping excluded keys."""
    multimap: AttributeMultimap = {}
    for row in rows:
        if row.key in excluded_keys:
            continue
        multimap.setdefault(row.key, []).append(row.value)
    return multimap


def multiset_difference(
    left: Sequence[AttributeValue],
    right: Sequence[AttributeValue],
) -> list[AttributeValue]:
    """
    Bag difference ``left - right``.

    Each value in ``right`` cancels at most one equal value in ``left``.
    The result keeps the order of ``left``.
    """
    remaining = Counter(right)
    difference: list[AttributeValue] = []
    for value in left:
        if remaining[value] > 0:
            remaining[value] -= 1
        else:
            difference.append(value)
    return difference


def diff_multimaps(
    legacy: AttributeMultimap,
    normalized: AttributeMultimap,
) -> dict[str, tuple[list[AttributeValue], list[AttributeValue]]]:
    """
    Compare two multimaps key by key as bags.

    Every key present on either side is checked; a key is reported when
    the bag difference is non-empty in either direction. Ordering of
    values is ignored, duplicate counts are not.

    Returns:
        key -> (legacy values, normalized values) for each differing key,
        in sorted key order.
    """
    differences: dict[str, tuple[list[AttributeValue], list[AttributeValue]]] = {}
    for key in sorted(legacy.keys() | normalized.keys()):
        legacy_values = legacy.get(key, [])
        normalized_values = normalized.get(key, [])
        if multiset_difference(legacy_values, normalized_values) or multiset_difference(
            normalized_values, legacy_values
        ):
            differences[key] = (list(legacy_values), list(normalized_values))
    return differences


__all__ = [
    "AttributeMultimap",
    "normalize_attribute_rows",
    "to_multimap",
    "multiset_difference",
    "diff_multimaps",
]
