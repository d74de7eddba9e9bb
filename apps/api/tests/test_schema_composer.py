from __future__ import annotations

from collections.abc import Generator

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from conversion_engine.core.config import get_settings
from conversion_engine.core.database import Base
from conversion_engine.errors import InvalidArgumentError
from conversion_engine.extensions.models import ExtensionFieldDefinition
from conversion_engine.schema.base import FieldDefinition, FieldSource, FieldType, StaticBaseSchemaProvider
from conversion_engine.schema.composer import SchemaComposer


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def composer() -> SchemaComposer:
    provider = StaticBaseSchemaProvider(
        {
            "tickets": (
                FieldDefinition(name="title", field_type=FieldType.TEXT, required=True),
                FieldDefinition(name="severity", field_type=FieldType.NUMBER),
            )
        }
    )
    return SchemaComposer(provider)


def _add_extension(session: Session, field_name: str, *, tenant_id: str = "tenant-a", is_active: bool = True) -> None:
    session.add(
        ExtensionFieldDefinition(
            tenant_id=tenant_id,
            entity_table="tickets",
            field_name=field_name,
            field_type="text",
            display_name=field_name.title(),
            is_active=is_active,
        )
    )
    session.commit()


def _sample(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


def test_base_fields_precede_extensions_in_creation_order(db_session: Session, composer: SchemaComposer) -> None:
    _add_extension(db_session, "zone")
    _add_extension(db_session, "area")
    _add_extension(db_session, "retired", is_active=False)
    _add_extension(db_session, "other_tenant_only", tenant_id="tenant-b")

    schema = composer.compose(db_session, "tenant-a", "tickets")

    assert schema.names == ["title", "severity", "zone", "area"]
    assert [item.source for item in schema.fields] == [
        FieldSource.BASE,
        FieldSource.BASE,
        FieldSource.EXTENSION,
        FieldSource.EXTENSION,
    ]
    zone = schema.get_extension("zone")
    assert zone is not None
    assert zone.display_name == "Zone"
    assert zone.extension_id is not None
    assert schema.get_extension("title") is None
    assert schema.get_base("title") is not None


def test_extension_colliding_with_earlier_name_is_ignored(db_session: Session, composer: SchemaComposer) -> None:
    _add_extension(db_session, "title")
    _add_extension(db_session, "zone")
    _add_extension(db_session, "zone")

    schema = composer.compose(db_session, "tenant-a", "tickets")

    assert schema.names == ["title", "severity", "zone"]
    assert schema.get("title").source == FieldSource.BASE  # type: ignore[union-attr]


def test_compose_is_cached_until_invalidated(db_session: Session, composer: SchemaComposer) -> None:
    hits_before = _sample("schema_cache_hits_total")
    misses_before = _sample("schema_cache_misses_total")

    first = composer.compose(db_session, "tenant-a", "tickets")
    _add_extension(db_session, "zone")
    second = composer.compose(db_session, "tenant-a", "tickets")

    assert second is first
    assert "zone" not in second.names
    assert composer.cached_keys() == [("tenant-a", "tickets")]
    assert _sample("schema_cache_hits_total") - hits_before == 1
    assert _sample("schema_cache_misses_total") - misses_before == 1

    composer.invalidate("tenant-a", "tickets")
    third = composer.compose(db_session, "tenant-a", "tickets")

    assert "zone" in third.names
    composer.clear()
    assert composer.cached_keys() == []


def test_cache_can_be_disabled(db_session: Session, composer: SchemaComposer, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCHEMA_CACHE_ENABLED", "false")
    get_settings.cache_clear()

    composer.compose(db_session, "tenant-a", "tickets")
    _add_extension(db_session, "zone")
    schema = composer.compose(db_session, "tenant-a", "tickets")

    assert "zone" in schema.names
    assert composer.cached_keys() == []


def test_unsupported_table_is_rejected(db_session: Session, composer: SchemaComposer) -> None:
    assert composer.supports("tickets") is True
    assert composer.supports("leads") is False
    assert composer.supported_tables() == ["tickets"]

    with pytest.raises(InvalidArgumentError):
        composer.compose(db_session, "tenant-a", "leads")


def test_registered_tables_become_composable(db_session: Session) -> None:
    provider = StaticBaseSchemaProvider({})
    composer = SchemaComposer(provider)
    assert composer.supports("assets") is False

    provider.register_table("assets", (FieldDefinition(name="serial", field_type=FieldType.TEXT, required=True),))

    assert composer.compose(db_session, "tenant-a", "assets").names == ["serial"]


class _RacingComposer(SchemaComposer):
    """Commits a new extension and invalidates while a composition is in flight."""

    def __init__(self, provider, on_loaded) -> None:
        super().__init__(provider)
        self._on_loaded = on_loaded

    def _load_extensions(self, session: Session, tenant_id: str, entity_table: str) -> list[ExtensionFieldDefinition]:
        rows = super()._load_extensions(session, tenant_id, entity_table)
        on_loaded, self._on_loaded = self._on_loaded, None
        if on_loaded is not None:
            on_loaded(self)
        return rows


@pytest.mark.parametrize("reset", ["invalidate", "clear"])
def test_composition_overlapping_invalidation_is_not_cached(
    db_session: Session, composer: SchemaComposer, reset: str
) -> None:
    _add_extension(db_session, "zone")

    def concurrent_mutation(racing: SchemaComposer) -> None:
        _add_extension(db_session, "area")
        if reset == "invalidate":
            racing.invalidate("tenant-a", "tickets")
        else:
            racing.clear()

    racing = _RacingComposer(composer.provider, concurrent_mutation)

    stale = racing.compose(db_session, "tenant-a", "tickets")
    assert stale.names == ["title", "severity", "zone"]
    assert racing.cached_keys() == []

    fresh = racing.compose(db_session, "tenant-a", "tickets")
    assert fresh.names == ["title", "severity", "zone", "area"]
    assert racing.cached_keys() == [("tenant-a", "tickets")]
