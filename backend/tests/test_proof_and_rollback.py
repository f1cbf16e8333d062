"""
Tests for ProofEvaluator and RollbackManager.

Key tests:
1. Negative proof (100 -> 70) rolls the entity back to its snapshot hash
2. Material lift completes and feeds the Pattern Learner
3. Inside the materiality band: completed, nothing learned
4. Metrics outage defers; no verdict, no rollback
5. Rollback is idempotent and only runs from proving/completed
6. Failed restore is CRITICAL, alerted, and leaves the opportunity proving
7. run_due() only picks up closed windows
"""
import logging
from datetime import timedelta

import pytest

from app.models.db_models import (
    LearnedPatternDB, OpportunityStatus, ProofRecordDB, ProofVerdict, SnapshotDB, utcnow,
)
from app.services.loop.errors import InvalidTransitionError, RollbackFailedError, SnapshotError
from app.services.loop.execution_engine import ExecutionEngine
from app.services.loop.proof_evaluator import ProofEvaluator, compute_verdict
from app.services.loop.rollback_manager import RollbackManager
from app.services.loop.snapshot_store import compute_state_hash


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def proving(db, collaborators, add_product, make_opportunity):
    """An applied content rewrite on e1, baseline revenue 100."""
    add_product("t1", "e1", content_score=45, price=20.0, revenue=100.0, traffic=50)
    opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
    result = ExecutionEngine(db, collaborators).execute(opportunity.id)
    assert result.success
    db.refresh(opportunity)
    return opportunity


def _snapshot(db, opportunity_id):
    return db.query(SnapshotDB).filter(SnapshotDB.opportunity_id == opportunity_id).one()


# =============================================================================
# TEST: VERDICT
# =============================================================================

class TestComputeVerdict:
    """Relative delta against the materiality threshold."""

    @pytest.mark.parametrize("before,after,verdict", [
        (100, 120, ProofVerdict.SUCCESS),
        (100, 110, ProofVerdict.NEUTRAL),
        (100, 95, ProofVerdict.NEUTRAL),
        (100, 90, ProofVerdict.NEUTRAL),
        (100, 70, ProofVerdict.NEGATIVE),
    ])
    def test_thresholds(self, before, after, verdict):
        assert compute_verdict(before, after, 0.10)["verdict"] == verdict

    def test_zero_baseline_uses_direction(self):
        outcome = compute_verdict(0, 5, 0.10)
        assert outcome["relative_delta"] is None
        assert outcome["verdict"] == ProofVerdict.SUCCESS
        assert compute_verdict(0, 0, 0.10)["verdict"] == ProofVerdict.NEUTRAL


# =============================================================================
# TEST: EVALUATE
# =============================================================================

class TestEvaluate:
    """Window handling and verdict side effects."""

    def test_negative_proof_rolls_back(self, db, collaborators, proving):
        collaborators.metrics.set_indicators("e1", revenue=70.0)

        proof = ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        assert proof.verdict == ProofVerdict.NEGATIVE
        assert proof.relative_delta == -0.3
        db.refresh(proving)
        assert proving.status == OpportunityStatus.ROLLED_BACK
        snapshot = _snapshot(db, proving.id)
        assert compute_state_hash(collaborators.catalog.get("e1")) == snapshot.state_hash
        kinds = [n["kind"] for n in collaborators.notifications.sent]
        assert "opportunity_rolled_back" in kinds
        assert kinds[-1] == "proof_recorded"

    def test_success_completes_and_learns(self, db, collaborators, settings, proving):
        collaborators.metrics.set_indicators("e1", revenue=130.0)

        proof = ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        assert proof.verdict == ProofVerdict.SUCCESS
        assert proof.exposure == 50
        db.refresh(proving)
        assert proving.status == OpportunityStatus.COMPLETED
        pattern = db.query(LearnedPatternDB).filter(LearnedPatternDB.category == "content").one()
        assert pattern.sample_size == 1
        assert collaborators.catalog.restore_calls == []

    def test_neutral_completes_without_learning(self, db, collaborators, proving):
        collaborators.metrics.set_indicators("e1", revenue=104.0)

        proof = ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        assert proof.verdict == ProofVerdict.NEUTRAL
        db.refresh(proving)
        assert proving.status == OpportunityStatus.COMPLETED
        assert db.query(LearnedPatternDB).count() == 0

    def test_open_window_returns_none(self, db, collaborators, proving):
        assert ProofEvaluator(db, collaborators).evaluate(proving.id) is None
        db.refresh(proving)
        assert proving.status == OpportunityStatus.PROVING
        assert proving.proof_attempts == 0

    def test_metrics_outage_defers(self, db, collaborators, settings, proving):
        collaborators.metrics.unavailable.add("e1")
        original_due = proving.proof_due_at

        proof = ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        assert proof is None
        db.refresh(proving)
        assert proving.status == OpportunityStatus.PROVING
        assert proving.proof_attempts == 1
        assert proving.proof_due_at != original_due
        assert db.query(ProofRecordDB).count() == 0
        assert collaborators.catalog.restore_calls == []

    def test_second_evaluation_returns_same_record(self, db, collaborators, proving):
        collaborators.metrics.set_indicators("e1", revenue=130.0)
        evaluator = ProofEvaluator(db, collaborators)

        first = evaluator.evaluate(proving.id, force=True)
        second = evaluator.evaluate(proving.id, force=True)

        assert first.id == second.id
        assert db.query(ProofRecordDB).count() == 1

    def test_missing_baseline_rolls_back_and_frees_entity(self, db, collaborators, make_opportunity, proving):
        snapshot = _snapshot(db, proving.id)
        payload = dict(snapshot.captured_state)
        payload["metrics"] = {}
        snapshot.captured_state = payload
        db.commit()

        with pytest.raises(SnapshotError):
            ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        db.refresh(proving)
        assert proving.status == OpportunityStatus.ROLLED_BACK
        assert compute_state_hash(collaborators.catalog.get("e1")) == snapshot.state_hash
        assert db.query(ProofRecordDB).count() == 0

        follow_up = make_opportunity(status=OpportunityStatus.APPROVED)
        assert ExecutionEngine(db, collaborators).execute(follow_up.id).success

    def test_unprovable_without_rollback_fails(self, db, collaborators, proving):
        snapshot = _snapshot(db, proving.id)
        payload = dict(snapshot.captured_state)
        payload["metrics"] = {}
        snapshot.captured_state = payload
        snapshot.can_rollback = False
        db.commit()

        with pytest.raises(SnapshotError):
            ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        db.refresh(proving)
        assert proving.status == OpportunityStatus.FAILED
        assert "Proof impossible" in proving.error_detail
        assert collaborators.notifications.sent[-1]["kind"] == "opportunity_failed"

        summary = ProofEvaluator(db, collaborators).run_due(now=utcnow() + timedelta(days=30))
        assert summary["due"] == 0

    def test_failed_rollback_stays_proving(self, db, collaborators, proving, caplog):
        collaborators.metrics.set_indicators("e1", revenue=50.0)
        collaborators.catalog.fail_restores = True

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(RollbackFailedError):
                ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        db.refresh(proving)
        assert proving.status == OpportunityStatus.PROVING
        assert proving.proof_attempts == 1
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
        assert collaborators.notifications.sent[-1]["kind"] == "rollback_failed"


# =============================================================================
# TEST: RUN DUE
# =============================================================================

class TestRunDue:
    """Resumable batch evaluation."""

    def test_only_closed_windows(self, db, collaborators, proving):
        collaborators.metrics.set_indicators("e1", revenue=130.0)
        evaluator = ProofEvaluator(db, collaborators)

        early = evaluator.run_due()
        late = evaluator.run_due(now=utcnow() + timedelta(hours=73))

        assert early["due"] == 0
        assert late["evaluated"] == 1
        assert late["verdicts"] == {proving.id: "success"}

    def test_deferred_are_counted(self, db, collaborators, proving):
        collaborators.metrics.unavailable.add("e1")

        summary = ProofEvaluator(db, collaborators).run_due(now=utcnow() + timedelta(hours=73))

        assert summary["deferred"] == 1
        assert summary["evaluated"] == 0


# =============================================================================
# TEST: ROLLBACK MANAGER
# =============================================================================

class TestRollbackManager:
    """Exact, idempotent restore."""

    def test_manual_rollback_from_completed(self, db, collaborators, proving):
        collaborators.metrics.set_indicators("e1", revenue=104.0)
        ProofEvaluator(db, collaborators).evaluate(proving.id, force=True)

        result = RollbackManager(db, collaborators).rollback(proving.id, reason="manual")

        assert result.rolled_back is True
        db.refresh(proving)
        assert proving.status == OpportunityStatus.ROLLED_BACK
        assert compute_state_hash(collaborators.catalog.get("e1")) == _snapshot(db, proving.id).state_hash

    def test_second_rollback_is_no_op(self, db, collaborators, proving):
        manager = RollbackManager(db, collaborators)

        assert manager.rollback(proving.id, reason="manual").rolled_back is True
        again = manager.rollback(proving.id, reason="manual")

        assert again.no_op is True
        assert len(collaborators.catalog.restore_calls) == 1

    def test_failed_before_apply_is_no_op(self, db, collaborators, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.FAILED)
        result = RollbackManager(db, collaborators).rollback(opportunity.id, reason="manual")
        assert result.no_op is True
        assert collaborators.catalog.restore_calls == []

    def test_pending_cannot_roll_back(self, db, collaborators, make_opportunity):
        opportunity = make_opportunity()
        with pytest.raises(InvalidTransitionError):
            RollbackManager(db, collaborators).rollback(opportunity.id, reason="manual")

    def test_hash_mismatch_is_a_failed_rollback(self, db, collaborators, proving, caplog):
        """A catalog that does not honour restore is caught by the hash check."""
        collaborators.catalog.restore = lambda entity_ref, prior_state: None

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(RollbackFailedError):
                RollbackManager(db, collaborators).rollback(proving.id, reason="manual")

        db.refresh(proving)
        assert proving.status == OpportunityStatus.PROVING
        assert "ROLLBACK FAILED" in caplog.text
