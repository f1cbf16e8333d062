"""
Tests for LoopScheduler and LoopWorkerPool.

Key tests:
1. Tenant cycles run in parallel, each on its own session
2. One tenant's failure does not stop the others
3. Worker pool executes off the calling thread and can be cancelled
"""
from unittest.mock import patch

import pytest

from app.models.db_models import AutonomyLevel, OpportunityDB, OpportunityStatus, RiskTolerance
from app.services.loop.autonomy_gate import set_policy
from app.services.loop.loop_controller import LoopController
from app.services.loop.scheduler import LoopScheduler
from app.services.loop.worker_pool import LoopWorkerPool


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def two_tenants(db, add_product):
    """t1 and t2, each with one weak listing and full autonomy."""
    for tenant_id, ref in (("t1", "a1"), ("t2", "b1")):
        add_product(tenant_id, ref, content_score=45, price=20.0, revenue=100.0, traffic=50, conversion=0.05)
        set_policy(db, tenant_id, AutonomyLevel.FULL, RiskTolerance.LOW)
    db.commit()


@pytest.fixture
def pool(session_factory, collaborators):
    pool = LoopWorkerPool(session_factory, collaborators, max_workers=2)
    yield pool
    pool.shutdown()


# =============================================================================
# TEST: SCHEDULER
# =============================================================================

class TestLoopScheduler:
    """All-tenant runs."""

    def test_known_tenants(self, session_factory, collaborators, two_tenants):
        assert LoopScheduler(session_factory, collaborators).known_tenants() == ["t1", "t2"]

    def test_run_all_tenants(self, db, session_factory, collaborators, two_tenants):
        summary = LoopScheduler(session_factory, collaborators, max_workers=2).run_all_tenants()

        assert summary["tenants"] == 2
        assert summary["cycles_completed"] == 2
        assert summary["errors"] == 0
        assert [c["tenant_id"] for c in summary["details"]["cycles"]] == ["t1", "t2"]
        statuses = {o.tenant_id: o.status for o in db.query(OpportunityDB)}
        assert statuses == {"t1": OpportunityStatus.PROVING, "t2": OpportunityStatus.PROVING}

    def test_failing_tenant_is_isolated(self, session_factory, collaborators, two_tenants):
        scheduler = LoopScheduler(session_factory, collaborators)
        original = scheduler.run_tenant_cycle

        def run(tenant_id, batch=False):
            if tenant_id == "t1":
                raise RuntimeError("catalog exploded")
            return original(tenant_id, batch)

        with patch.object(scheduler, "run_tenant_cycle", side_effect=run):
            summary = scheduler.run_all_tenants(["t1", "t2"])

        assert summary["cycles_completed"] == 1
        assert summary["details"]["errors"] == [{"tenant_id": "t1", "error": "catalog exploded"}]

    def test_run_due_proofs_with_nothing_due(self, session_factory, collaborators):
        summary = LoopScheduler(session_factory, collaborators).run_due_proofs()
        assert summary["due"] == 0
        assert "run_date" in summary


# =============================================================================
# TEST: WORKER POOL
# =============================================================================

class TestLoopWorkerPool:
    """Background execution."""

    def test_submit_executes_on_own_session(self, pool, collaborators, add_product, make_opportunity):
        add_product("t1", "e1", revenue=100.0)
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        result = pool.submit_execution(opportunity.id).result(timeout=10)

        assert result.success is True
        assert pool.in_flight() == 0

    def test_cycle_hands_off_to_pool(self, db, pool, collaborators, two_tenants):
        result = LoopController(db, collaborators, worker_pool=pool).run_cycle("t1")
        assert result.execution is None

        pool.shutdown(wait=True)

        db.expire_all()
        opportunity = db.query(OpportunityDB).filter(OpportunityDB.tenant_id == "t1").one()
        assert opportunity.status == OpportunityStatus.PROVING

    def test_cancel_unknown_is_false(self, pool):
        assert pool.cancel("nothing-running") is False
