"""
Unit tests for building target records from source records.
"""

import pytest

from refdata_migration.migration.builder import EntityBuilder
from refdata_migration.migration.models import Record, Reference
from refdata_migration.migration.resolver import NaturalKeyMap, build_natural_key_map
from refdata_migration.resources import CITY, REGION, EntityDefinition, ReferenceField

pytestmark = pytest.mark.unit

# Postal codes whose city is optional: an untranslatable city is nulled
POSTAL_CODE = EntityDefinition(
    name="postal_code",
    key_fields=["code"],
    fields=["county"],
    references=[
        ReferenceField(field="region", entity_type="region"),
        ReferenceField(field="city", entity_type="city", required=False),
    ],
)


@pytest.fixture
def region_maps():
    """Source knows CA and OR, target only knows CA"""
    source = NaturalKeyMap("region")
    source.add(("CA",), "s-ca")
    source.add(("OR",), "s-or")
    target = NaturalKeyMap("region")
    target.add(("CA",), "t-ca")
    return source, target


def _city(sid: str, name: str, region_id: str | None, region_map: NaturalKeyMap) -> Record:
    region = Reference("region", region_id) if region_id else None
    record = Record("city", sid, {"name": name, "region": region})
    build_natural_key_map([record], CITY, {"region": region_map})
    return record


class TestEntityBuilder:
    """Tests for EntityBuilder"""

    def test_plain_entity_is_copied_without_surrogate_id(self):
        record = Record("region", "s-ca", {"abbreviation": "CA", "name": " California "})
        build_natural_key_map([record], REGION)

        result = EntityBuilder(REGION, {}, {}).build([record])

        assert len(result.records) == 1
        built = result.records[0]
        assert built.surrogate_id is None
        assert built.fields == {"abbreviation": "CA", "name": "California"}
        assert built.natural_key == ("CA",)
        assert built.key_fields == ("abbreviation",)

    def test_reference_is_rewritten_to_target_id(self, region_maps):
        source, target = region_maps
        city = _city("s-la", "Los Angeles", "s-ca", source)

        result = EntityBuilder(CITY, {"region": source}, {"region": target}).build([city])

        assert result.records[0].fields["region"] == Reference("region", "t-ca")
        assert result.records[0].key_attributes == {
            "name": "Los Angeles",
            "region": Reference("region", "t-ca"),
        }

    def test_unresolved_required_reference_is_skipped_not_failed(self, region_maps):
        source, target = region_maps
        cities = [
            _city("s-la", "Los Angeles", "s-ca", source),
            _city("s-pdx", "Portland", "s-or", source),
        ]

        result = EntityBuilder(CITY, {"region": source}, {"region": target}).build(cities)

        assert [r.get("name") for r in result.records] == ["Los Angeles"]
        assert result.skipped_count == 1
        skipped = result.skipped[0]
        assert skipped.index == 1
        assert skipped.source_id == "s-pdx"
        assert skipped.natural_key == "Portland|OR"
        assert skipped.field == "region"
        assert not result.invalid

    def test_unresolved_optional_reference_is_nulled(self, region_maps):
        source, target = region_maps
        source_cities = NaturalKeyMap("city")
        source_cities.add(("Portland", "OR"), "s-pdx")
        target_cities = NaturalKeyMap("city")
        postal = Record(
            "postal_code",
            "s-97201",
            {
                "code": "97201",
                "county": "Multnomah",
                "region": Reference("region", "s-ca"),
                "city": Reference("city", "s-pdx"),
            },
        )
        build_natural_key_map([postal], POSTAL_CODE)

        result = EntityBuilder(
            POSTAL_CODE,
            {"region": source, "city": source_cities},
            {"region": target, "city": target_cities},
        ).build([postal])

        built = result.records[0]
        assert built.fields["city"] is None
        assert built.fields["region"] == Reference("region", "t-ca")
        assert result.nulled_references == 1
        assert result.skipped_count == 0

    def test_empty_references(self, region_maps):
        source, target = region_maps
        postal_codes = [
            Record("postal_code", "s-1", {"code": "00001", "region": Reference("region", "s-ca")}),
            Record("postal_code", "s-2", {"code": "00002", "region": None}),
        ]
        build_natural_key_map(postal_codes, POSTAL_CODE)

        result = EntityBuilder(
            POSTAL_CODE,
            {"region": source, "city": NaturalKeyMap("city")},
            {"region": target, "city": NaturalKeyMap("city")},
        ).build(postal_codes)

        assert len(result.records) == 1
        assert result.records[0].fields["city"] is None
        assert result.skipped[0].source_id == "s-2"
        assert result.skipped[0].reason == "reference is empty"

    def test_record_without_natural_key_is_invalid(self):
        record = Record("region", "s-x", {"abbreviation": "", "name": "Nowhere"})
        build_natural_key_map([record], REGION)

        result = EntityBuilder(REGION, {}, {}).build([record])

        assert result.records == []
        assert result.invalid[0].index == 0
        assert "s-x" in result.invalid[0].message

    def test_missing_parent_map_is_rejected(self):
        with pytest.raises(ValueError, match="region"):
            EntityBuilder(CITY, {}, {})
