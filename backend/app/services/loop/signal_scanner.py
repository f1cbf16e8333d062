"""
Signal Scanner

Inspects a tenant's entities and records typed friction signals.

Key behaviors:
- Reads a bounded set of entities from the Catalog Service
- Fetches indicators per entity under a fast-path timeout
- A failing entity is skipped and picked up again next cycle
- Re-scanning never duplicates an unresolved (new/queued) signal
- Cold start: a tenant without usable history gets foundational signals
  instead of an empty result
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import SignalDB, SignalStatus, OpportunityDB, IN_FLIGHT_STATUSES, utcnow
from ...models.loop_models import DetectedSignal
from .collaborators import Collaborators
from .opportunity_types import (
    FOUNDATIONAL_SIGNAL_TYPES,
    SIGNAL_HIGH_TRAFFIC_LOW_CONVERSION,
    SIGNAL_LOW_SCORE,
    SIGNAL_PRICE_ABOVE_MARKET,
    SIGNAL_REVENUE_DROP,
)
from .retry import call_with_timeout


logger = logging.getLogger(__name__)


# =============================================================================
# DETECTION THRESHOLDS
# =============================================================================

SIGNAL_THRESHOLDS = {
    "POOR_CONTENT_SCORE": 60,
    "MIN_TRAFFIC_FOR_CONVERSION_ANALYSIS": 10,
    "LOW_CONVERSION_RATE": 0.02,
    "TARGET_CONVERSION_RATE": 0.03,
    "PRICE_ABOVE_MARKET_RATIO": 1.15,
    "REVENUE_DROP_RATIO": -0.15,
}

# Foundational checks carry a modest fixed impact so they rank below any
# real friction signal the tenant later produces.
FOUNDATIONAL_IMPACT = {
    "foundational_title_clarity": 12.0,
    "foundational_description_clarity": 10.0,
    "foundational_trust_signals": 8.0,
}

# Must stay above ContentRewriteHandler.risk_penalty / base_confidence_weight.
LOW_SCORE_MIN_IMPACT = 15.0

Detector = Callable[[str, Dict[str, Any]], Optional[DetectedSignal]]


# =============================================================================
# DETECTORS (pluggable scorers)
# =============================================================================

def detect_low_score(entity_ref: str, indicators: Dict[str, Any]) -> Optional[DetectedSignal]:
    score = indicators.get("content_score")
    if score is None or score >= SIGNAL_THRESHOLDS["POOR_CONTENT_SCORE"]:
        return None
    price = float(indicators.get("price", 0) or 0)
    gap = (SIGNAL_THRESHOLDS["POOR_CONTENT_SCORE"] - score) / SIGNAL_THRESHOLDS["POOR_CONTENT_SCORE"]
    return DetectedSignal(
        entity_ref=entity_ref,
        signal_type=SIGNAL_LOW_SCORE,
        estimated_impact=round(max(price * 0.05 * 30, LOW_SCORE_MIN_IMPACT), 2),
        confidence=int(max(20, 80 - score)),
        magnitude=round(min(1.0, gap), 4),
        evidence={"content_score": score},
    )


def detect_high_traffic_low_conversion(entity_ref: str, indicators: Dict[str, Any]) -> Optional[DetectedSignal]:
    traffic = float(indicators.get("traffic", 0) or 0)
    if traffic < SIGNAL_THRESHOLDS["MIN_TRAFFIC_FOR_CONVERSION_ANALYSIS"]:
        return None
    conversion = float(indicators.get("conversion", 0) or 0)
    if conversion >= SIGNAL_THRESHOLDS["LOW_CONVERSION_RATE"]:
        return None
    price = float(indicators.get("price", 0) or 0)
    missed = traffic * SIGNAL_THRESHOLDS["TARGET_CONVERSION_RATE"] - traffic * conversion
    impact = missed * price
    if impact <= 10:
        return None
    return DetectedSignal(
        entity_ref=entity_ref,
        signal_type=SIGNAL_HIGH_TRAFFIC_LOW_CONVERSION,
        estimated_impact=round(impact, 2),
        confidence=int(min(90, 50 + traffic / 10)),
        magnitude=0.3,
        evidence={"traffic": traffic, "conversion": conversion},
    )


def detect_price_above_market(entity_ref: str, indicators: Dict[str, Any]) -> Optional[DetectedSignal]:
    ratio = indicators.get("price_vs_market")
    if ratio is None or ratio <= SIGNAL_THRESHOLDS["PRICE_ABOVE_MARKET_RATIO"]:
        return None
    price = float(indicators.get("price", 0) or 0)
    traffic = float(indicators.get("traffic", 0) or 0)
    overshoot = ratio - 1.0
    return DetectedSignal(
        entity_ref=entity_ref,
        signal_type=SIGNAL_PRICE_ABOVE_MARKET,
        estimated_impact=round(max(price * traffic * 0.01 * overshoot, 1.0), 2),
        confidence=60,
        magnitude=round(min(1.0, overshoot), 4),
        evidence={"price_vs_market": ratio},
    )


def detect_revenue_drop(entity_ref: str, indicators: Dict[str, Any]) -> Optional[DetectedSignal]:
    trend = indicators.get("revenue_trend")
    if trend is None or trend >= SIGNAL_THRESHOLDS["REVENUE_DROP_RATIO"]:
        return None
    revenue = float(indicators.get("revenue", 0) or 0)
    return DetectedSignal(
        entity_ref=entity_ref,
        signal_type=SIGNAL_REVENUE_DROP,
        estimated_impact=round(max(abs(trend) * revenue, 1.0), 2),
        confidence=55,
        magnitude=round(min(1.0, abs(trend)), 4),
        evidence={"revenue_trend": trend},
    )


DEFAULT_DETECTORS: List[Detector] = [
    detect_low_score,
    detect_high_traffic_low_conversion,
    detect_price_above_market,
    detect_revenue_drop,
]


# =============================================================================
# SCANNER
# =============================================================================

class SignalScanner:
    """
    Usage:
        scanner = SignalScanner(db, collaborators)
        signals = scanner.scan(tenant_id)
    """

    def __init__(
        self,
        db: Session,
        collaborators: Collaborators,
        detectors: Optional[List[Detector]] = None,
    ):
        self.db = db
        self.collaborators = collaborators
        self.settings = collaborators.settings
        self.detectors = detectors if detectors is not None else list(DEFAULT_DETECTORS)
        self.skipped_entities: List[str] = []

    def scan(self, tenant_id: str) -> List[SignalDB]:
        """
        Scan the tenant and persist new signals.

        Returns only the signals created by this call. Duplicates of
        unresolved signals are dropped.
        """
        logger.info(f"Scanning tenant {tenant_id}")
        self.skipped_entities = []
        timeout = self.settings.collaborator_timeout_seconds

        try:
            entity_refs = call_with_timeout(
                self.collaborators.catalog.list_entities,
                timeout,
                tenant_id,
                self.settings.scan_entity_limit,
            )
        except Exception as e:
            logger.warning(f"Entity listing failed for tenant {tenant_id}: {e}")
            return []

        detected: List[DetectedSignal] = []
        for entity_ref in entity_refs:
            try:
                indicators = call_with_timeout(
                    self.collaborators.metrics.performance_indicators,
                    timeout,
                    entity_ref,
                )
            except Exception as e:
                # Retried on the next cycle
                logger.warning(f"Skipping {entity_ref} this cycle: {e}")
                self.skipped_entities.append(entity_ref)
                continue

            for detector in self.detectors:
                signal = detector(entity_ref, indicators)
                if signal is not None:
                    detected.append(signal)

        if not detected and self.is_cold_start(tenant_id):
            logger.info(f"Cold start for tenant {tenant_id}: emitting foundational signals")
            detected = self.foundational_signals(tenant_id, entity_refs)

        created = self._persist(tenant_id, detected)
        logger.info(
            f"Scan complete for tenant {tenant_id}: {len(detected)} detected, "
            f"{len(created)} new, {len(self.skipped_entities)} skipped"
        )
        return created

    def emit_foundational(self, tenant_id: str) -> List[SignalDB]:
        """Persist foundational signals regardless of history."""
        try:
            entity_refs = call_with_timeout(
                self.collaborators.catalog.list_entities,
                self.settings.collaborator_timeout_seconds,
                tenant_id,
                self.settings.scan_entity_limit,
            )
        except Exception as e:
            logger.warning(f"Entity listing failed for tenant {tenant_id}: {e}")
            entity_refs = []
        return self._persist(tenant_id, self.foundational_signals(tenant_id, entity_refs))

    def is_cold_start(self, tenant_id: str) -> bool:
        history = (
            self.db.query(SignalDB)
            .filter(
                SignalDB.tenant_id == tenant_id,
                SignalDB.is_foundational.is_(False),
            )
            .count()
        )
        return history < self.settings.cold_start_min_history

    def foundational_signals(self, tenant_id: str, entity_refs: List[str]) -> List[DetectedSignal]:
        """The fixed best-practice set, aimed at the first idle entity."""
        target = self._first_idle_entity(tenant_id, entity_refs) or f"tenant:{tenant_id}"
        return [
            DetectedSignal(
                entity_ref=target,
                signal_type=signal_type,
                estimated_impact=FOUNDATIONAL_IMPACT[signal_type],
                confidence=50,
                magnitude=0.1,
                is_foundational=True,
                evidence={"detection_method": "foundational_best_practice"},
            )
            for signal_type in FOUNDATIONAL_SIGNAL_TYPES
        ]

    def get_active_signals(self, tenant_id: str, limit: int = 50) -> List[SignalDB]:
        """Unresolved, unexpired signals, newest first."""
        now = utcnow()
        return (
            self.db.query(SignalDB)
            .filter(
                SignalDB.tenant_id == tenant_id,
                SignalDB.status.in_([SignalStatus.NEW, SignalStatus.QUEUED]),
                (SignalDB.expires_at.is_(None)) | (SignalDB.expires_at > now),
            )
            .order_by(SignalDB.detected_at.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _first_idle_entity(self, tenant_id: str, entity_refs: List[str]) -> Optional[str]:
        if not entity_refs:
            return None
        busy = {
            ref for (ref,) in self.db.query(OpportunityDB.entity_ref).filter(
                OpportunityDB.tenant_id == tenant_id,
                OpportunityDB.status.in_(IN_FLIGHT_STATUSES),
            )
        }
        for ref in entity_refs:
            if ref not in busy:
                return ref
        return entity_refs[0]

    def _is_duplicate(self, tenant_id: str, signal: DetectedSignal) -> bool:
        now = utcnow()
        return (
            self.db.query(SignalDB.id)
            .filter(
                SignalDB.tenant_id == tenant_id,
                SignalDB.entity_ref == signal.entity_ref,
                SignalDB.signal_type == signal.signal_type,
                SignalDB.status.in_([SignalStatus.NEW, SignalStatus.QUEUED]),
                (SignalDB.expires_at.is_(None)) | (SignalDB.expires_at > now),
            )
            .first()
            is not None
        )

    def _persist(self, tenant_id: str, detected: List[DetectedSignal]) -> List[SignalDB]:
        created: List[SignalDB] = []
        seen = set()
        now = utcnow()
        expires_at = now + timedelta(days=self.settings.signal_ttl_days)

        for signal in detected:
            key = (signal.entity_ref, signal.signal_type)
            if key in seen or self._is_duplicate(tenant_id, signal):
                continue
            seen.add(key)

            record = SignalDB(
                id=str(uuid4()),
                tenant_id=tenant_id,
                entity_ref=signal.entity_ref,
                signal_type=signal.signal_type,
                estimated_impact=signal.estimated_impact,
                confidence=signal.confidence,
                magnitude=signal.magnitude,
                is_foundational=signal.is_foundational,
                signal_data=signal.evidence,
                status=SignalStatus.NEW,
                detected_at=now,
                expires_at=expires_at,
            )
            self.db.add(record)
            created.append(record)

        self.db.flush()
        return created
