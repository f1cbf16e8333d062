"""
Opportunity Synthesizer

Groups unconsumed signals into scored opportunities.

Scoring:
    priority = estimated_impact * confidence_weight(category) - risk_penalty(type)
    safety   = handler.safety_score(magnitude)      # 0-100, lower = safer

Ranking: priority desc, then safety asc, then newest evidence first.

Signals are marked consumed in the same transaction (savepoint) that
creates their opportunity, so a group is either fully folded in or not at
all.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    OpportunityDB, SignalDB, OpportunityStatus, SignalStatus,
    IN_FLIGHT_STATUSES, TERMINAL_STATUSES, utcnow,
)
from .collaborators import Collaborators
from .opportunity_types import handler_for_signal
from .pattern_learner import PatternLearner
from .state_machine import OpportunityStateMachine


logger = logging.getLogger(__name__)

OPEN_STATUSES = [s for s in OpportunityStatus if s not in TERMINAL_STATUSES]


def ranking_key(opportunity: OpportunityDB) -> Tuple[float, float, float]:
    """Sort key: priority desc, safety asc, recency desc."""
    recency = opportunity.latest_signal_at or opportunity.created_at or datetime.min
    return (-opportunity.priority_score, opportunity.safety_score, -(recency - datetime.min).total_seconds())


def rank(opportunities: List[OpportunityDB]) -> List[OpportunityDB]:
    return sorted(opportunities, key=ranking_key)


class OpportunitySynthesizer:
    """
    Usage:
        synthesizer = OpportunitySynthesizer(db, collaborators)
        ranked = synthesizer.synthesize(signals)
        selected = ranked[0] if ranked else None
    """

    def __init__(self, db: Session, collaborators: Collaborators):
        self.db = db
        self.settings = collaborators.settings
        self.learner = PatternLearner(db, self.settings)
        self.state_machine = OpportunityStateMachine(db)

    def synthesize(self, signals: List[SignalDB]) -> List[OpportunityDB]:
        """
        Fold signals into new pending opportunities and return them ranked.

        Signals whose entity already has open work of the same kind, or an
        in-flight execution, are marked QUEUED and wait for a later cycle.
        """
        groups = self._group(signals)
        created: List[OpportunityDB] = []

        for (tenant_id, entity_ref, compatibility_key), group in groups.items():
            if self._entity_busy(tenant_id, entity_ref, compatibility_key):
                self._queue(group)
                continue

            opportunity = self._create_from_group(tenant_id, entity_ref, compatibility_key, group)
            if opportunity is not None:
                created.append(opportunity)

        ranked = rank(created)
        logger.info(f"Synthesized {len(ranked)} opportunities from {len(signals)} signals")
        return ranked

    def select(self, ranked: List[OpportunityDB], batch: bool = False) -> List[OpportunityDB]:
        """
        Head of the ranking, or all of it in batch mode.

        Opportunities whose priority is not positive are never acted on.
        """
        actionable = [o for o in ranked if (o.priority_score or 0) > 0]
        if len(actionable) < len(ranked):
            logger.info(f"Skipping {len(ranked) - len(actionable)} opportunities with non-positive priority")
        if batch:
            return actionable
        return actionable[:1]

    def open_opportunities(self, tenant_id: str) -> List[OpportunityDB]:
        """Ranked pending/approved opportunities for the tenant."""
        rows = (
            self.db.query(OpportunityDB)
            .filter(
                OpportunityDB.tenant_id == tenant_id,
                OpportunityDB.status.in_([OpportunityStatus.PENDING, OpportunityStatus.APPROVED]),
            )
            .all()
        )
        return rank(rows)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _group(self, signals: List[SignalDB]) -> "OrderedDict[Tuple[str, str, str], List[SignalDB]]":
        now = utcnow()
        groups: "OrderedDict[Tuple[str, str, str], List[SignalDB]]" = OrderedDict()
        for signal in signals:
            if signal.status == SignalStatus.CONSUMED:
                continue
            if signal.expires_at is not None and signal.expires_at <= now:
                continue
            handler = handler_for_signal(signal.signal_type)
            if handler is None:
                logger.warning(f"No handler for signal type {signal.signal_type}; ignoring {signal.id}")
                continue
            key = (signal.tenant_id, signal.entity_ref, handler.compatibility_key)
            groups.setdefault(key, []).append(signal)
        return groups

    def _entity_busy(self, tenant_id: str, entity_ref: str, compatibility_key: str) -> bool:
        blocking = (
            self.db.query(OpportunityDB.id)
            .filter(
                OpportunityDB.tenant_id == tenant_id,
                OpportunityDB.entity_ref == entity_ref,
                (
                    OpportunityDB.status.in_(IN_FLIGHT_STATUSES)
                    | (
                        OpportunityDB.status.in_(OPEN_STATUSES)
                        & (OpportunityDB.compatibility_key == compatibility_key)
                    )
                ),
            )
            .first()
        )
        return blocking is not None

    def _queue(self, group: List[SignalDB]) -> None:
        ids = [s.id for s in group if s.status == SignalStatus.NEW]
        if not ids:
            return
        (
            self.db.query(SignalDB)
            .filter(SignalDB.id.in_(ids), SignalDB.status == SignalStatus.NEW)
            .update({SignalDB.status: SignalStatus.QUEUED}, synchronize_session="fetch")
        )

    def _create_from_group(
        self,
        tenant_id: str,
        entity_ref: str,
        compatibility_key: str,
        group: List[SignalDB],
    ) -> Optional[OpportunityDB]:
        lead = max(group, key=lambda s: (s.estimated_impact or 0.0, s.confidence or 0))
        handler = handler_for_signal(lead.signal_type)

        estimated_impact = round(sum(s.estimated_impact or 0.0 for s in group), 2)
        magnitude = max(s.magnitude or 0.0 for s in group)
        weight = self.learner.confidence_weight(tenant_id, handler.category)
        priority = round(estimated_impact * weight - handler.risk_penalty_for(self.settings), 4)
        safety = handler.safety_score(magnitude)
        latest = max(s.detected_at for s in group)
        signal_ids = [s.id for s in group]

        savepoint = self.db.begin_nested()
        opportunity = OpportunityDB(
            id=str(uuid4()),
            tenant_id=tenant_id,
            entity_ref=entity_ref,
            opportunity_type=handler.opportunity_type,
            category=handler.category,
            compatibility_key=compatibility_key,
            source_signal_ids=signal_ids,
            is_foundational=all(s.is_foundational for s in group),
            priority_score=priority,
            safety_score=safety,
            estimated_impact=estimated_impact,
            magnitude=magnitude,
            latest_signal_at=latest,
            status=OpportunityStatus.PENDING,
        )
        self.db.add(opportunity)
        self.db.flush()

        consumed = (
            self.db.query(SignalDB)
            .filter(
                SignalDB.id.in_(signal_ids),
                SignalDB.status.in_([SignalStatus.NEW, SignalStatus.QUEUED]),
            )
            .update(
                {SignalDB.status: SignalStatus.CONSUMED, SignalDB.consumed_by: opportunity.id},
                synchronize_session="fetch",
            )
        )
        if consumed != len(signal_ids):
            # Another worker folded some of these signals first
            savepoint.rollback()
            logger.info(f"Signals for {entity_ref}/{compatibility_key} already consumed; skipping")
            return None

        self.state_machine.record_event(
            opportunity.id,
            OpportunityStatus.PENDING,
            trigger="synthesized",
            detail={
                "signal_types": sorted({s.signal_type for s in group}),
                "confidence_weight": weight,
                "risk_penalty": handler.risk_penalty_for(self.settings),
            },
        )
        savepoint.commit()

        logger.info(
            f"Opportunity {opportunity.id}: {handler.opportunity_type} on {entity_ref} "
            f"priority={priority} safety={safety}"
        )
        return opportunity

    def weights(self, tenant_id: str) -> Dict[str, float]:
        return self.learner.confidence_weights(tenant_id)
