"""
Unit tests for EntityTransformer.
"""

from decimal import Decimal

import pytest

from recordsync.config import FieldSpec, SyncConfig
from recordsync.exceptions import EntityTransformError
from recordsync.models import AttributeRow
from recordsync.transform import EntityTransformer
from tests.fixtures import BASE_TIME, make_legacy_entity


@pytest.fixture
def transformer() -> EntityTransformer:
    return EntityTransformer(SyncConfig())


class TestCanonicalFields:
    """Tests for canonical_fields()."""

    def test_promoted_values_are_converted(self, transformer: EntityTransformer) -> None:
        fields = transformer.canonical_fields(make_legacy_entity(1))
        assert fields == {
            "currency": "EUR",
            "total_amount": Decimal("19.99"),
            "customer_id": 42,
            "billing_email": "customer@example.com",
            "payment_method": "bacs",
            "date_paid": BASE_TIME,
            "date_completed": None,
        }

    def test_empty_string_maps_to_none(self, transformer: EntityTransformer) -> None:
        entity = make_legacy_entity(1, attributes=[("_order_total", ""), ("_customer_user", None)])
        fields = transformer.canonical_fields(entity)
        assert fields["total_amount"] is None
        assert fields["customer_id"] is None

    def test_unconvertible_value_raises(self, transformer: EntityTransformer) -> None:
        entity = make_legacy_entity(9, attributes=[("_order_total", "nineteen")])
        with pytest.raises(EntityTransformError) as exc_info:
            transformer.canonical_fields(entity)
        assert exc_info.value.entity_id == 9
        assert exc_info.value.key == "_order_total"

    def test_nan_total_raises(self, transformer: EntityTransformer) -> None:
        entity = make_legacy_entity(4, attributes=[("_order_total", "NaN")])
        with pytest.raises(EntityTransformError, match="non-finite decimal"):
            transformer.canonical_fields(entity)

    def test_repeated_promoted_key_raises(self, transformer: EntityTransformer) -> None:
        entity = make_legacy_entity(
            3, attributes=[("_order_currency", "EUR"), ("_order_currency", "USD")]
        )
        with pytest.raises(EntityTransformError, match="expected one value, found 2"):
            transformer.canonical_fields(entity)


class TestToNormalized:
    """Tests for to_normalized()."""

    def test_copies_core_fields(self, transformer: EntityTransformer) -> None:
        legacy = make_legacy_entity(5, status="wc-processing")
        normalized = transformer.to_normalized(legacy, synced_at=legacy.modified_at)

        assert normalized.id == 5
        assert normalized.entity_type == "shop_order"
        assert normalized.status == "wc-processing"
        assert normalized.created_at == legacy.created_at
        assert normalized.modified_at == legacy.modified_at
        assert normalized.synced_at == legacy.modified_at

    def test_promoted_keys_leave_the_attribute_rows(self, transformer: EntityTransformer) -> None:
        legacy = make_legacy_entity(5)
        normalized = transformer.to_normalized(legacy, synced_at=legacy.modified_at)
        assert normalized.attributes == [
            AttributeRow(5, "_shipping_city", "Berlin"),
            AttributeRow(5, "_gift_note", "Happy birthday"),
        ]

    def test_duplicate_free_form_rows_are_kept(self, transformer: EntityTransformer) -> None:
        legacy = make_legacy_entity(2, attributes=[("k", "a"), ("k", "a"), ("k", "b")])
        normalized = transformer.to_normalized(legacy, synced_at=legacy.modified_at)
        assert [row.value for row in normalized.attributes] == ["a", "a", "b"]

    def test_custom_field_specs(self) -> None:
        transformer = EntityTransformer(
            SyncConfig(field_specs=(FieldSpec("city", "_shipping_city"),))
        )
        legacy = make_legacy_entity(1)
        normalized = transformer.to_normalized(legacy, synced_at=legacy.modified_at)

        assert normalized.columns == {"city": "Berlin"}
        assert transformer.migrated_attribute_keys() == frozenset({"_shipping_city"})
        assert "_order_total" in [row.key for row in normalized.attributes]
