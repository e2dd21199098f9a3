"""
Pytest fixtures for stage gate tests.
"""

import os
import tempfile
import uuid
from typing import AsyncGenerator, Iterable, Optional

# Point the application database at a throwaway file before stagegate is imported
_TEST_DB_DIR = tempfile.mkdtemp(prefix="stagegate-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/app.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-stagegate-at-least-32-chars")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from stagegate.config import Settings
from stagegate.context import StageContext
from stagegate.kernel.events.event_bus import EventBus
from stagegate.kernel.identity.jwt import JWTManager, Role
from stagegate.kernel.models import Base
from stagegate.kernel.persistence.durable import InMemoryDurable
from stagegate.kernel.principals.store import PrincipalStore
from stagegate.kernel.rules.cache import ResolutionCache
from stagegate.kernel.rules.catalog import ResourceCatalog
from stagegate.kernel.rules.registry import RuleRegistry
from stagegate.kernel.stages.definitions import (
    InteractionRule,
    KindRules,
    ResourceKind,
    RuleSet,
    StageDefinition,
)
from stagegate.kernel.stages.graph import GrantPolicy, RevokePolicy, StageGraph
from stagegate.kernel.stages.stage_id import StageId


def stage(
    stage_id: str,
    deps: Iterable[str] = (),
    *,
    items: Iterable[str] = (),
    item_tags: Iterable[str] = (),
    item_mods: Iterable[str] = (),
    unlocked_items: Iterable[str] = (),
    blocks: Iterable[str] = (),
    mods: Iterable[str] = (),
    names: Iterable[str] = (),
    interactions: Iterable[InteractionRule] = (),
    unlock_message: Optional[str] = None,
) -> StageDefinition:
    """Build a StageDefinition with item/block rules."""
    kinds = {}
    item_rules = KindRules(
        ids=frozenset(items),
        tags=tuple(item_tags),
        namespaces=frozenset(item_mods),
        unlocked=frozenset(unlocked_items),
    )
    if not item_rules.is_empty():
        kinds[ResourceKind.ITEM] = item_rules
    if blocks:
        kinds[ResourceKind.BLOCK] = KindRules(ids=frozenset(blocks))
    return StageDefinition(
        id=StageId.parse(stage_id),
        display_name=stage_id.replace("_", " ").title(),
        dependencies=tuple(StageId.parse(d) for d in deps),
        unlock_message=unlock_message,
        rules=RuleSet(
            kinds=kinds,
            namespaces=frozenset(mods),
            names=tuple(names),
            interactions=tuple(interactions),
        ),
    )


class Recorder:
    """Collects every event published on a bus."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


class Engine:
    """Kernel components wired together without the application context."""

    def __init__(
        self,
        definitions: Iterable[StageDefinition] = (),
        *,
        grant_policy: GrantPolicy = GrantPolicy.CASCADING,
        revoke_policy: RevokePolicy = RevokePolicy.NO_CASCADE,
        durable: Optional[InMemoryDurable] = None,
    ):
        from stagegate.kernel.events.event_types import BaseEvent

        self.bus = EventBus()
        self.recorder = Recorder()
        self.bus.subscribe(BaseEvent, self.recorder)
        self.catalog = ResourceCatalog()
        self.graph = StageGraph(definitions)
        self.registry = RuleRegistry(self.catalog)
        self.registry.load(self.graph.definitions())
        self.cache = ResolutionCache(self.registry, max_entries=128)
        self.durable = durable if durable is not None else InMemoryDurable()
        self.store = PrincipalStore(
            self.graph,
            self.cache,
            self.bus,
            self.durable,
            grant_policy=grant_policy,
            revoke_policy=revoke_policy,
        )


@pytest.fixture
def make_engine():
    return Engine


@pytest.fixture
def principal_id() -> uuid.UUID:
    return uuid.uuid4()


def _settings(**overrides) -> Settings:
    values = {
        "database_url": os.environ["DATABASE_URL"],
        "cycle_interval_seconds": 0.01,
        "reconcile_debounce_seconds": 0.01,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return _settings()


@pytest.fixture
def make_context():
    """Factory for a StageContext with in-memory durability."""

    def factory(definitions: Iterable[StageDefinition] = (), durable=None, **overrides) -> StageContext:
        context = StageContext(_settings(**overrides), durable=durable or InMemoryDurable())
        context.load_definitions(list(definitions))
        return context

    return factory


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def jwt_manager() -> JWTManager:
    """JWT manager for creating test tokens."""
    return JWTManager()


@pytest.fixture
def admin_headers(jwt_manager: JWTManager) -> dict:
    token, _, _ = jwt_manager.create_access_token(uuid.uuid4(), Role.ADMIN)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def principal_headers(jwt_manager: JWTManager, principal_id: uuid.UUID) -> dict:
    token, _, _ = jwt_manager.create_access_token(principal_id, Role.PRINCIPAL)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_context(make_context) -> StageContext:
    """Context served by the API client fixture."""
    return make_context([
        stage("base", items=["base:stone_pick"]),
        stage("mid", ["base"], names=["alloy"], unlock_message="Alloys unlocked"),
        stage("late", ["mid"], item_mods=["techmod"]),
    ])


@pytest_asyncio.fixture
async def client(api_context: StageContext) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with a prepared context (lifespan not run)."""
    from stagegate.main import app

    app.state.context = api_context
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.context = None


@pytest.fixture
def make_stage():
    return stage


@pytest.fixture
def make_settings():
    return _settings
