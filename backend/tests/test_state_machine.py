"""
Tests for OpportunityStateMachine.

Key tests:
1. Only configured edges are allowed; terminal states have none (except manual undo)
2. transition() is conditional: a stale expected status returns False
3. Every successful transition writes an audit event
"""
import pytest

from app.models.db_models import ActorType, OpportunityEventDB, OpportunityStatus, TERMINAL_STATUSES
from app.services.loop.errors import InvalidTransitionError
from app.services.loop.state_machine import STATE_CONFIG, OpportunityStateMachine


class TestConfig:
    """Static transition table."""

    def test_every_status_is_configured(self):
        assert set(STATE_CONFIG) == set(OpportunityStatus)

    @pytest.mark.parametrize("status", TERMINAL_STATUSES)
    def test_terminal_flags(self, db, status):
        assert OpportunityStateMachine(db).is_terminal(status) is True

    def test_only_completed_can_leave_a_terminal_state(self):
        for status in TERMINAL_STATUSES:
            allowed = STATE_CONFIG[status]["allowed_transitions"]
            if status == OpportunityStatus.COMPLETED:
                assert allowed == [OpportunityStatus.ROLLED_BACK]
            else:
                assert allowed == []

    @pytest.mark.parametrize("from_status,to_status", [
        (OpportunityStatus.PENDING, OpportunityStatus.PROVING),
        (OpportunityStatus.APPROVED, OpportunityStatus.REJECTED),
        (OpportunityStatus.PROVING, OpportunityStatus.CANCELLED),
        (OpportunityStatus.REJECTED, OpportunityStatus.EXECUTING),
    ])
    def test_illegal_edges(self, db, from_status, to_status):
        allowed, reason = OpportunityStateMachine(db).can_transition(from_status, to_status)
        assert allowed is False
        assert from_status.value in reason


class TestTransition:
    """Conditional updates against the database."""

    def test_transition_moves_and_logs(self, db, make_opportunity):
        opportunity = make_opportunity()
        machine = OpportunityStateMachine(db)

        moved = machine.transition(
            opportunity.id, OpportunityStatus.PENDING, OpportunityStatus.APPROVED,
            trigger="review_approved", actor=ActorType.USER, detail={"reviewer": "ops"},
        )
        db.commit()

        assert moved is True
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.APPROVED
        event = db.query(OpportunityEventDB).one()
        assert (event.from_status, event.to_status, event.actor) == ("pending", "approved", ActorType.USER)
        assert event.detail == {"reviewer": "ops"}

    def test_stale_expected_status_loses(self, db, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        moved = OpportunityStateMachine(db).transition(
            opportunity.id, OpportunityStatus.PENDING, OpportunityStatus.APPROVED, trigger="review_approved",
        )

        assert moved is False
        assert db.query(OpportunityEventDB).count() == 0

    def test_extra_fields_written_in_same_update(self, db, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        OpportunityStateMachine(db).transition(
            opportunity.id, OpportunityStatus.APPROVED, OpportunityStatus.FAILED,
            trigger="execution_failed", error_detail="boom",
        )
        db.commit()

        db.refresh(opportunity)
        assert opportunity.error_detail == "boom"

    def test_illegal_edge_raises(self, db, make_opportunity):
        opportunity = make_opportunity()
        with pytest.raises(InvalidTransitionError):
            OpportunityStateMachine(db).transition(
                opportunity.id, OpportunityStatus.PENDING, OpportunityStatus.COMPLETED, trigger="skip",
            )
