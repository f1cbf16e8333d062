"""
Pattern Learner

Turns proven successes into per-tenant, per-category priors that bias the
synthesizer's ranking. Patterns are merge-only: sample_size grows,
success_rate is re-averaged and confidence never decreases.

Merges are optimistic: UPDATE ... WHERE sample_size = :seen, re-read and
retried when another worker merged first, so no increment is lost.
"""
import logging
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import LoopSettings, get_settings
from ...models.db_models import (
    LearnedPatternDB, OpportunityDB, ProofRecordDB, OpportunityStatus, ProofVerdict, utcnow,
)
from .errors import DataIntegrityError


logger = logging.getLogger(__name__)

# Optimistic merges per learn() call before giving up
MERGE_ATTEMPTS = 5


class PatternLearner:
    """
    Merge completed successes into LearnedPatternDB rows.

    Usage:
        learner = PatternLearner(db)
        learner.learn(opportunity, proof)
        weight = learner.confidence_weight(tenant_id, "content")
    """

    def __init__(self, db: Session, settings: Optional[LoopSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # =========================================================================
    # LEARN
    # =========================================================================

    def learn(
        self,
        opportunity: OpportunityDB,
        proof: ProofRecordDB,
    ) -> Optional[LearnedPatternDB]:
        """
        Merge one proven outcome into the category pattern.

        Only completed opportunities with a success verdict and enough
        measured exposure are learned from; anything else returns None.
        """
        if opportunity.status != OpportunityStatus.COMPLETED:
            return None
        if proof.verdict != ProofVerdict.SUCCESS:
            return None
        if (proof.exposure or 0) < self.settings.min_learning_exposure:
            logger.info(
                f"Skipping learning for {opportunity.id}: exposure {proof.exposure} "
                f"below {self.settings.min_learning_exposure}"
            )
            return None

        pattern = self._get_or_create(opportunity.tenant_id, opportunity.category)
        for _ in range(MERGE_ATTEMPTS):
            seen = pattern.sample_size or 0
            updated = (
                self.db.query(LearnedPatternDB)
                .filter(LearnedPatternDB.id == pattern.id, LearnedPatternDB.sample_size == seen)
                .update(self._merged(pattern, opportunity, proof), synchronize_session="fetch")
            )
            if updated == 1:
                break
            # Another worker merged first; re-read and merge on top of it
            logger.info(f"Pattern {pattern.id} changed under us (n={seen}); retrying merge")
            self.db.expire(pattern)
        else:
            raise DataIntegrityError(
                f"Could not merge {opportunity.id} into pattern {pattern.id} after {MERGE_ATTEMPTS} attempts"
            )

        logger.info(
            f"Learned {opportunity.category} for tenant {opportunity.tenant_id}: "
            f"n={pattern.sample_size} rate={pattern.success_rate} confidence={pattern.confidence}"
        )
        return pattern

    def _merged(self, pattern: LearnedPatternDB, opportunity: OpportunityDB, proof: ProofRecordDB) -> Dict:
        """Column values for the pattern with one more observation folded in."""
        data = dict(pattern.pattern_data or {})

        weight = float(proof.exposure or 1.0)
        prior_weight = float(data.get("total_exposure", 0.0))
        observation = self.outcome_score(proof.relative_delta)
        sample_size = (pattern.sample_size or 0) + 1

        type_counts = dict(data.get("opportunity_types", {}))
        type_counts[opportunity.opportunity_type] = type_counts.get(opportunity.opportunity_type, 0) + 1
        lifts = float(data.get("lift_sum", 0.0)) + float(proof.relative_delta or 0.0)
        data.update({
            "total_exposure": prior_weight + weight,
            "opportunity_types": type_counts,
            "lift_sum": lifts,
            "average_lift": round(lifts / sample_size, 4),
            "last_opportunity_id": opportunity.id,
        })
        return {
            LearnedPatternDB.success_rate: round(
                ((pattern.success_rate or 0.0) * prior_weight + observation * weight) / (prior_weight + weight), 4
            ),
            LearnedPatternDB.sample_size: sample_size,
            LearnedPatternDB.confidence: max(pattern.confidence or 0.0, self.confidence_for(sample_size)),
            LearnedPatternDB.pattern_data: data,
            LearnedPatternDB.updated_at: utcnow(),
        }

    def outcome_score(self, relative_delta: Optional[float]) -> float:
        """Map a relative lift to 0.5-1.0: material wins score higher."""
        lift = max(0.0, relative_delta or 0.0)
        return min(1.0, 0.5 + lift)

    def confidence_for(self, sample_size: int) -> float:
        """n / (n + k), strictly increasing in n and capped at 1.0."""
        k = self.settings.confidence_k
        return round(min(1.0, sample_size / (sample_size + k)), 4)

    def _get_or_create(self, tenant_id: str, category: str) -> LearnedPatternDB:
        pattern = self.get_pattern(tenant_id, category)
        if pattern is not None:
            return pattern

        savepoint = self.db.begin_nested()
        try:
            pattern = LearnedPatternDB(
                id=str(uuid4()),
                tenant_id=tenant_id,
                category=category,
                pattern_data={},
                success_rate=0.0,
                sample_size=0,
                confidence=0.0,
            )
            self.db.add(pattern)
            self.db.flush()
            savepoint.commit()
            return pattern
        except IntegrityError:
            # Another worker created it first
            savepoint.rollback()
            return self.get_pattern(tenant_id, category)

    # =========================================================================
    # READ (synthesizer priors)
    # =========================================================================

    def get_pattern(self, tenant_id: str, category: str) -> Optional[LearnedPatternDB]:
        return (
            self.db.query(LearnedPatternDB)
            .filter(
                LearnedPatternDB.tenant_id == tenant_id,
                LearnedPatternDB.category == category,
            )
            .first()
        )

    def get_patterns(self, tenant_id: str) -> List[LearnedPatternDB]:
        return (
            self.db.query(LearnedPatternDB)
            .filter(LearnedPatternDB.tenant_id == tenant_id)
            .order_by(LearnedPatternDB.confidence.desc())
            .all()
        )

    def confidence_weight(self, tenant_id: str, category: str) -> float:
        """
        Prior multiplier for priority scoring.

        base when nothing is learned; rises toward 1.0 as proven success
        rate and confidence grow.
        """
        base = self.settings.base_confidence_weight
        pattern = self.get_pattern(tenant_id, category)
        if pattern is None or not pattern.sample_size:
            return base
        return round(base + (pattern.success_rate * pattern.confidence) * (1 - base), 4)

    def confidence_weights(self, tenant_id: str) -> Dict[str, float]:
        return {
            p.category: self.confidence_weight(tenant_id, p.category)
            for p in self.get_patterns(tenant_id)
        }
