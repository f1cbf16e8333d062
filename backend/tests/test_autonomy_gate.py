"""
Tests for the Autonomy Gate.

Key tests:
1. decide() covers every (autonomy level, risk tolerance, safety) case
2. Exactly at the ceiling is still auto-executed
3. Policy resolution: entity -> tenant -> approve_only default
4. set_policy() upserts instead of duplicating rows
"""
import pytest

from app.config import LoopSettings
from app.models.db_models import AutonomyLevel, AutonomyPolicyDB, OpportunityDB, RiskTolerance
from app.models.loop_models import AutonomyPolicy, GateDecision
from app.services.loop.autonomy_gate import DEFAULT_POLICY, AutonomyGate, decide, resolve_policy, set_policy


def _opportunity(safety):
    return OpportunityDB(id="o1", tenant_id="t1", entity_ref="e1", safety_score=safety)


# =============================================================================
# TEST: DECISION TABLE
# =============================================================================

class TestDecide:
    """Pure, total decision function."""

    @pytest.mark.parametrize("tolerance", list(RiskTolerance))
    @pytest.mark.parametrize("safety", [0, 25, 50, 100])
    def test_disabled_always_rejects(self, tolerance, safety):
        policy = AutonomyPolicy(AutonomyLevel.DISABLED, tolerance)
        assert decide(_opportunity(safety), policy, LoopSettings()) == GateDecision.REJECT

    @pytest.mark.parametrize("tolerance", list(RiskTolerance))
    @pytest.mark.parametrize("safety", [0, 25, 50, 100])
    def test_approve_only_always_requires_approval(self, tolerance, safety):
        policy = AutonomyPolicy(AutonomyLevel.APPROVE_ONLY, tolerance)
        assert decide(_opportunity(safety), policy, LoopSettings()) == GateDecision.REQUIRE_APPROVAL

    @pytest.mark.parametrize("tolerance,safety,expected", [
        (RiskTolerance.LOW, 20, GateDecision.AUTO_EXECUTE),
        (RiskTolerance.LOW, 25, GateDecision.AUTO_EXECUTE),
        (RiskTolerance.LOW, 25.01, GateDecision.REQUIRE_APPROVAL),
        (RiskTolerance.MEDIUM, 50, GateDecision.AUTO_EXECUTE),
        (RiskTolerance.MEDIUM, 60, GateDecision.REQUIRE_APPROVAL),
        (RiskTolerance.HIGH, 75, GateDecision.AUTO_EXECUTE),
        (RiskTolerance.HIGH, 90, GateDecision.REQUIRE_APPROVAL),
    ])
    def test_full_compares_against_ceiling(self, tolerance, safety, expected):
        policy = AutonomyPolicy(AutonomyLevel.FULL, tolerance)
        assert decide(_opportunity(safety), policy, LoopSettings()) == expected

    def test_ceilings_are_configurable(self):
        settings = LoopSettings(tolerance_ceilings={"low": 10.0, "medium": 50.0, "high": 75.0})
        policy = AutonomyPolicy(AutonomyLevel.FULL, RiskTolerance.LOW)
        assert decide(_opportunity(20), policy, settings) == GateDecision.REQUIRE_APPROVAL

    def test_default_policy_is_manual(self):
        assert DEFAULT_POLICY.autonomy_level == AutonomyLevel.APPROVE_ONLY
        assert decide(_opportunity(0), DEFAULT_POLICY, LoopSettings()) == GateDecision.REQUIRE_APPROVAL


# =============================================================================
# TEST: POLICY RESOLUTION
# =============================================================================

class TestResolvePolicy:
    """Most specific policy wins."""

    def test_no_rows_falls_back_to_default(self, db):
        policy = resolve_policy(db, "t1", "e1")
        assert policy == DEFAULT_POLICY
        assert policy.source == "default"

    def test_tenant_policy_applies_to_every_entity(self, db):
        set_policy(db, "t1", AutonomyLevel.FULL, RiskTolerance.MEDIUM)
        db.commit()

        policy = resolve_policy(db, "t1", "e1")

        assert policy.autonomy_level == AutonomyLevel.FULL
        assert policy.risk_tolerance == RiskTolerance.MEDIUM
        assert policy.source == "tenant"

    def test_entity_policy_overrides_tenant(self, db):
        set_policy(db, "t1", AutonomyLevel.FULL, RiskTolerance.HIGH)
        set_policy(db, "t1", AutonomyLevel.DISABLED, RiskTolerance.LOW, entity_ref="e1")
        db.commit()

        assert resolve_policy(db, "t1", "e1").autonomy_level == AutonomyLevel.DISABLED
        assert resolve_policy(db, "t1", "e2").autonomy_level == AutonomyLevel.FULL

    def test_other_tenant_is_not_visible(self, db):
        set_policy(db, "t2", AutonomyLevel.FULL, RiskTolerance.HIGH)
        db.commit()
        assert resolve_policy(db, "t1", "e1").source == "default"

    def test_set_policy_updates_in_place(self, db):
        set_policy(db, "t1", AutonomyLevel.FULL, RiskTolerance.LOW)
        db.commit()
        set_policy(db, "t1", AutonomyLevel.APPROVE_ONLY, RiskTolerance.HIGH)
        db.commit()

        rows = db.query(AutonomyPolicyDB).filter(AutonomyPolicyDB.tenant_id == "t1").all()
        assert len(rows) == 1
        assert rows[0].autonomy_level == AutonomyLevel.APPROVE_ONLY
        assert rows[0].risk_tolerance == RiskTolerance.HIGH


class TestAutonomyGate:
    """Session-bound resolve + decide."""

    def test_evaluate_uses_entity_policy(self, db, settings, make_opportunity):
        opportunity = make_opportunity(entity_ref="e1", safety_score=20)
        set_policy(db, "t1", AutonomyLevel.FULL, RiskTolerance.LOW, entity_ref="e1")
        db.commit()

        gate = AutonomyGate(db, settings)

        assert gate.policy_for(opportunity).source == "entity"
        assert gate.evaluate(opportunity) == GateDecision.AUTO_EXECUTE
