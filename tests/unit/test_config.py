"""
Unit tests for configuration loading and entity definitions.
"""

import textwrap

import pytest
from pydantic import ValidationError

from refdata_migration.client.exceptions import DependencyError
from refdata_migration.config import (
    MigrationConfig,
    PerformanceConfig,
    StoreInstanceConfig,
    load_config_from_yaml,
)
from refdata_migration.resources import (
    CITY,
    POSTAL_CODE,
    REGION,
    EntityDefinition,
    ReferenceField,
    cleanup_order,
    get_default_entities,
    validate_dependency_order,
)

pytestmark = pytest.mark.unit

STORES = {
    "source": {"url": "https://source.example.com/", "token": "s"},
    "target": {"url": "https://target.example.com", "token": "t"},
}


class TestStoreInstanceConfig:
    """Tests for StoreInstanceConfig"""

    def test_url_is_normalized(self):
        config = StoreInstanceConfig(url="https://store.example.com/", token="x")

        assert config.url == "https://store.example.com"
        assert config.label == "https://store.example.com"

    def test_rejects_url_without_scheme(self):
        with pytest.raises(ValidationError):
            StoreInstanceConfig(url="store.example.com", token="x")

    def test_rejects_blank_token(self):
        with pytest.raises(ValidationError):
            StoreInstanceConfig(url="https://store.example.com", token="  ")


class TestPerformanceConfig:
    """Tests for PerformanceConfig"""

    def test_defaults(self):
        config = PerformanceConfig()

        assert config.max_parallel == 4
        assert config.batch_size == 1000
        assert config.page_size == 5000
        assert config.retry_attempts == 3

    def test_batch_size_is_capped_at_request_limit(self):
        with pytest.raises(ValidationError):
            PerformanceConfig(batch_size=5001)

    def test_connection_pool_must_cover_parallelism(self):
        with pytest.raises(ValidationError):
            PerformanceConfig(max_parallel=16, http_max_connections=8)


class TestMigrationConfig:
    """Tests for MigrationConfig"""

    def test_default_entities_are_the_geo_dataset(self):
        config = MigrationConfig(**STORES)

        assert [entity.name for entity in config.entities] == ["region", "city", "postal_code"]

    def test_out_of_order_entities_are_rejected(self):
        with pytest.raises(ValidationError, match="not declared before"):
            MigrationConfig(**STORES, entities=[CITY.model_dump(), REGION.model_dump()])

    def test_load_yaml_with_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TARGET_TOKEN", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(
            textwrap.dedent(
                """
                source:
                  name: prod
                  url: https://source.example.com
                  token: abc
                target:
                  name: staging
                  url: https://target.example.com
                  token: ${TARGET_TOKEN}
                performance:
                  max_parallel: 2
                  batch_size: 250
                entities:
                  - name: region
                    key_fields: [abbreviation]
                    fields: [name]
                """
            )
        )

        config = load_config_from_yaml(path)

        assert config.target.token == "from-env"
        assert config.target.label == "staging"
        assert config.performance.batch_size == 250
        assert [entity.name for entity in config.entities] == ["region"]

    def test_missing_env_var_is_reported(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MISSING_TOKEN", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "source: {url: 'https://a.example.com', token: '${MISSING_TOKEN}'}\n"
            "target: {url: 'https://b.example.com', token: x}\n"
        )

        with pytest.raises(ValueError, match="MISSING_TOKEN"):
            load_config_from_yaml(path)

    def test_missing_and_empty_files(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_from_yaml(tmp_path / "nope.yaml")

        empty = tmp_path / "empty.yaml"
        empty.write_text("")
        with pytest.raises(ValueError, match="Empty"):
            load_config_from_yaml(empty)


class TestEntityDefinitions:
    """Tests for entity definitions and dependency order"""

    def test_builtin_dataset_order_is_valid(self):
        validate_dependency_order(get_default_entities())

    def test_projection_is_ordered_and_unique(self):
        assert CITY.projection == ["name", "region"]
        assert POSTAL_CODE.projection == ["code", "county", "latitude", "longitude", "region", "city"]

    def test_parent_declared_after_child_is_rejected(self):
        with pytest.raises(DependencyError, match="region"):
            validate_dependency_order([CITY, REGION])

    def test_duplicate_declaration_is_rejected(self):
        with pytest.raises(DependencyError, match="twice"):
            validate_dependency_order([REGION, REGION])

    def test_optional_reference_cannot_be_part_of_key(self):
        city = EntityDefinition(
            name="city",
            key_fields=["name", "region"],
            references=[ReferenceField(field="region", entity_type="region", required=False)],
        )

        with pytest.raises(DependencyError, match="required reference"):
            validate_dependency_order([REGION, city])

    def test_dedup_field_must_be_projected(self):
        with pytest.raises(ValidationError):
            EntityDefinition(name="region", key_fields=["abbreviation"], dedup_field="code")

    def test_cleanup_runs_children_first(self):
        assert [d.name for d in cleanup_order(get_default_entities())] == [
            "postal_code",
            "city",
            "region",
        ]

    def test_default_entities_are_independent_copies(self):
        first = get_default_entities()
        first[0].fields.append("extra")

        assert "extra" not in get_default_entities()[0].fields
        assert "extra" not in REGION.fields
