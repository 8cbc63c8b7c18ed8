"""
Tests for the feature catalog repository and storage error translation.
"""

import pytest
from unittest.mock import MagicMock

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from stokreal.errors import TransientStorageError, storage_errors
from stokreal.models.user import SubscriptionPlan
from stokreal.repositories.feature_definitions_repo import FeatureDefinitionsRepository


class TestCatalogReads:
    """Reads from tier_feature_definitions."""

    def test_definitions_are_ordered_by_name(self, db_session, seeded_catalog):
        names = [d.feature_name for d in FeatureDefinitionsRepository(db_session).get_definitions("free")]
        assert names == sorted(names)
        assert len(names) == 15

    def test_get_definition(self, db_session, seeded_catalog):
        definition = FeatureDefinitionsRepository(db_session).get_definition(
            SubscriptionPlan.FREE, "product_slot"
        )
        assert definition.feature_limit == 50
        assert definition.feature_enabled is True
        assert definition.is_unlimited is False

    def test_get_definition_missing(self, db_session, seeded_catalog):
        assert FeatureDefinitionsRepository(db_session).get_definition("free", "teleportation") is None

    def test_get_feature_limits(self, db_session, seeded_catalog):
        limits = FeatureDefinitionsRepository(db_session).get_feature_limits("premium")
        assert limits["product_slot"] == {"limit": None, "enabled": True}
        assert limits["whatsapp_messages"] == {"limit": 500, "enabled": True}

    def test_unknown_tier_raises(self, db_session):
        with pytest.raises(ValueError):
            FeatureDefinitionsRepository(db_session).get_definitions("enterprise")


class TestCatalogWrites:
    """upsert_definition / sync_from_seeds (seed script path)."""

    def test_upsert_creates_then_updates(self, db_session):
        repo = FeatureDefinitionsRepository(db_session)

        created = repo.upsert_definition("free", "product_slot", 50, description="Products")
        updated = repo.upsert_definition("free", "product_slot", 75)
        db_session.commit()

        assert created.id == updated.id
        assert repo.get_definition("free", "product_slot").feature_limit == 75

    def test_upsert_rejects_negative_limit(self, db_session):
        with pytest.raises(ValueError):
            FeatureDefinitionsRepository(db_session).upsert_definition("free", "product_slot", -1)

    def test_sync_is_repeatable(self, db_session, catalog_config):
        repo = FeatureDefinitionsRepository(db_session)
        seeds = catalog_config.definitions()

        assert repo.sync_from_seeds(seeds) == 30
        assert repo.sync_from_seeds(seeds) == 30
        db_session.commit()

        assert len(repo.get_definitions("free")) == 15
        assert len(repo.get_definitions("premium")) == 15


class TestStorageErrors:
    """Low-level failures surface as TransientStorageError."""

    def test_operational_error_is_transient(self):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT 1", {}, Exception("server closed"))

        with pytest.raises(TransientStorageError) as exc_info:
            FeatureDefinitionsRepository(session).get_definition("free", "product_slot")

        assert exc_info.value.context == {"tier": "free", "feature_name": "product_slot"}

    def test_invalidated_connection_is_transient(self):
        error = DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
        with pytest.raises(TransientStorageError):
            with storage_errors("probe"):
                raise error

    def test_integrity_error_passes_through(self):
        with pytest.raises(IntegrityError):
            with storage_errors("probe"):
                raise IntegrityError("INSERT", {}, Exception("duplicate key"))
