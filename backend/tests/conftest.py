"""
Shared fixtures for the opportunity loop tests.

Tests run against a temporary SQLite file so conditional updates and the
partial unique index behave as they do in production.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from uuid import uuid4
from sqlalchemy.orm import sessionmaker

from app.config import LoopSettings
from app.database import Base, build_engine
from app.models import db_models  # noqa: F401  (registers tables)
from app.models.db_models import OpportunityDB, OpportunityStatus
from app.services.loop.collaborators import build_in_memory_collaborators
from app.services.loop.opportunity_types import handler_for_type


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'loop.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Database session for the test body."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def settings():
    """Loop settings with instant retries."""
    return LoopSettings(retry_base_delay_seconds=0.0, collaborator_timeout_seconds=2.0)


@pytest.fixture
def collaborators(settings):
    """In-memory catalog, metrics, proposer and notifier."""
    return build_in_memory_collaborators(settings)


@pytest.fixture
def add_product(collaborators):
    """Register a catalog entity with its performance indicators."""
    def _add(tenant_id, entity_ref, state=None, **indicators):
        collaborators.catalog.add_entity(tenant_id, entity_ref, state or {
            "title": f"product {entity_ref}",
            "description": "Plain description.",
            "price": 20.0,
        })
        collaborators.metrics.set_indicators(entity_ref, **indicators)
    return _add


@pytest.fixture
def make_opportunity(db):
    """Insert an opportunity directly, bypassing scan and synthesis."""
    def _make(
        tenant_id="t1",
        entity_ref="e1",
        opportunity_type="content_rewrite",
        status=OpportunityStatus.PENDING,
        safety_score=20.0,
        priority_score=10.0,
        magnitude=0.25,
    ):
        handler = handler_for_type(opportunity_type)
        opportunity = OpportunityDB(
            id=str(uuid4()),
            tenant_id=tenant_id,
            entity_ref=entity_ref,
            opportunity_type=opportunity_type,
            category=handler.category,
            compatibility_key=handler.compatibility_key,
            source_signal_ids=[],
            priority_score=priority_score,
            safety_score=safety_score,
            estimated_impact=30.0,
            magnitude=magnitude,
            status=status,
        )
        db.add(opportunity)
        db.commit()
        return opportunity
    return _make
