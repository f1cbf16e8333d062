"""
Tests for PatternLearner.

Key tests:
1. Only completed successes with enough exposure are learned from
2. sample_size grows by one per observation, confidence never drops
3. success_rate is an exposure-weighted running average
4. confidence_weight() starts at the base and rises with evidence
5. Merges from two sessions never lose an increment
"""
import pytest

from app.models.db_models import LearnedPatternDB, OpportunityDB, OpportunityStatus, ProofRecordDB, ProofVerdict
from app.services.loop.pattern_learner import PatternLearner


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def learner(db, settings):
    return PatternLearner(db, settings)


def _completed(opportunity_id="o1", category="content", status=OpportunityStatus.COMPLETED):
    return OpportunityDB(
        id=opportunity_id, tenant_id="t1", entity_ref="e1",
        opportunity_type="content_rewrite", category=category, status=status,
    )


def _proof(relative_delta=0.2, exposure=50, verdict=ProofVerdict.SUCCESS):
    return ProofRecordDB(verdict=verdict, relative_delta=relative_delta, exposure=exposure)


# =============================================================================
# TEST: LEARN
# =============================================================================

class TestLearn:
    """Merge-only updates."""

    def test_first_observation_creates_pattern(self, db, learner):
        pattern = learner.learn(_completed(), _proof(relative_delta=0.2))
        db.commit()

        assert pattern.sample_size == 1
        assert pattern.success_rate == 0.7
        assert pattern.confidence == pytest.approx(1 / 6, abs=1e-4)
        assert pattern.pattern_data["opportunity_types"] == {"content_rewrite": 1}

    def test_running_average_is_exposure_weighted(self, db, learner):
        learner.learn(_completed("o1"), _proof(relative_delta=0.2, exposure=50))
        pattern = learner.learn(_completed("o2"), _proof(relative_delta=0.6, exposure=50))

        # (0.7 * 50 + 1.0 * 50) / 100
        assert pattern.success_rate == 0.85
        assert pattern.sample_size == 2
        assert db.query(LearnedPatternDB).count() == 1

    def test_confidence_is_monotone(self, learner):
        seen = []
        for i in range(6):
            pattern = learner.learn(_completed(f"o{i}"), _proof(relative_delta=0.15))
            seen.append(pattern.confidence)
        assert seen == sorted(seen)
        assert len(set(seen)) == len(seen)

    def test_concurrent_merges_keep_every_increment(self, session_factory, settings):
        """A worker holding a stale pattern re-reads instead of overwriting."""
        first, second = session_factory(), session_factory()
        try:
            PatternLearner(first, settings).learn(_completed("o1"), _proof())
            first.commit()

            stale = PatternLearner(second, settings).get_pattern("t1", "content")
            assert stale.sample_size == 1

            PatternLearner(first, settings).learn(_completed("o2"), _proof())
            first.commit()

            merged = PatternLearner(second, settings).learn(_completed("o3"), _proof())
            second.commit()

            assert merged.sample_size == 3
            first.expire_all()
            stored = first.query(LearnedPatternDB).one()
            assert stored.sample_size == 3
            assert stored.pattern_data["opportunity_types"] == {"content_rewrite": 3}
            assert stored.pattern_data["last_opportunity_id"] == "o3"
        finally:
            first.close()
            second.close()

    @pytest.mark.parametrize("opportunity,proof", [
        (_completed(status=OpportunityStatus.ROLLED_BACK), _proof()),
        (_completed(), _proof(verdict=ProofVerdict.NEUTRAL)),
        (_completed(), _proof(verdict=ProofVerdict.NEGATIVE, relative_delta=-0.3)),
        (_completed(), _proof(exposure=3)),
    ])
    def test_ignored_outcomes(self, db, learner, opportunity, proof):
        assert learner.learn(opportunity, proof) is None
        assert db.query(LearnedPatternDB).count() == 0


# =============================================================================
# TEST: PRIORS
# =============================================================================

class TestConfidenceWeight:
    """Synthesizer multiplier."""

    def test_base_without_history(self, learner, settings):
        assert learner.confidence_weight("t1", "content") == settings.base_confidence_weight

    def test_rises_with_evidence(self, learner):
        before = learner.confidence_weight("t1", "content")
        learner.learn(_completed(), _proof(relative_delta=0.4))
        after = learner.confidence_weight("t1", "content")
        assert after > before
        assert after <= 1.0

    def test_scoped_per_tenant_and_category(self, learner):
        learner.learn(_completed(), _proof())
        assert learner.confidence_weight("t2", "content") == 0.5
        assert learner.confidence_weight("t1", "pricing") == 0.5
        assert set(learner.confidence_weights("t1")) == {"content"}
