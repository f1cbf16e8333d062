"""
Opportunity Type Registry

One handler class per opportunity type. Each handler owns:
- which signal types it resolves
- its scoring inputs (risk penalty, safety curve)
- propose(): ask the Proposal Service for a concrete change
- apply(): write the change through the Catalog Service
- revert(): restore the captured state through the Catalog Service

Adding a new type means adding a handler here and registering it; no
dispatch site elsewhere switches on type strings.
"""
from typing import Any, Dict, List, Optional, Tuple

from ...config import LoopSettings
from .collaborators import CatalogService, ProposalService
from .errors import DataIntegrityError, ProposalError


# =============================================================================
# SIGNAL TYPES
# =============================================================================

SIGNAL_LOW_SCORE = "low_score"
SIGNAL_HIGH_TRAFFIC_LOW_CONVERSION = "high_traffic_low_conversion"
SIGNAL_PRICE_ABOVE_MARKET = "price_above_market"
SIGNAL_REVENUE_DROP = "revenue_drop"

# Generic best-practice checks used when a tenant has no usable history
SIGNAL_FOUNDATIONAL_TITLE = "foundational_title_clarity"
SIGNAL_FOUNDATIONAL_DESCRIPTION = "foundational_description_clarity"
SIGNAL_FOUNDATIONAL_TRUST = "foundational_trust_signals"

FOUNDATIONAL_SIGNAL_TYPES = (
    SIGNAL_FOUNDATIONAL_TITLE,
    SIGNAL_FOUNDATIONAL_DESCRIPTION,
    SIGNAL_FOUNDATIONAL_TRUST,
)


# =============================================================================
# HANDLERS
# =============================================================================

class OpportunityHandler:
    """Base handler. Subclasses set the class attributes."""

    opportunity_type: str = ""
    category: str = ""
    compatibility_key: str = ""
    signal_types: Tuple[str, ...] = ()
    target_fields: Tuple[str, ...] = ()
    risk_penalty: float = 0.0
    base_safety: float = 0.0       # safety score of a zero-magnitude change
    magnitude_weight: float = 0.0  # added safety score per unit of magnitude
    reversible: bool = True
    label: str = ""

    def risk_penalty_for(self, settings: LoopSettings) -> float:
        return settings.risk_penalties.get(self.opportunity_type, self.risk_penalty)

    def safety_score(self, magnitude: float) -> float:
        """0-100, lower = safer. Grows with the size of the proposed change."""
        magnitude = max(0.0, min(1.0, magnitude or 0.0))
        return round(max(0.0, min(100.0, self.base_safety + magnitude * self.magnitude_weight)), 2)

    def propose(
        self,
        proposals: ProposalService,
        entity_state: Dict[str, Any],
        magnitude: float,
    ) -> Dict[str, Any]:
        """
        Get a change payload and confine it to this handler's fields.

        Raises ProposalError when the payload is empty or touches fields
        this type does not own.
        """
        context = {
            "target_fields": list(self.target_fields),
            "magnitude": magnitude,
            "category": self.category,
        }
        change = proposals.propose(self.opportunity_type, entity_state, context)
        fields = (change or {}).get("fields") or {}
        if not fields:
            raise ProposalError(f"Empty proposal for {self.opportunity_type}")
        foreign = sorted(set(fields) - set(self.target_fields))
        if foreign:
            raise ProposalError(
                f"Proposal for {self.opportunity_type} touches unowned fields: {foreign}"
            )
        return {"fields": fields}

    def apply(
        self,
        catalog: CatalogService,
        entity_ref: str,
        change: Dict[str, Any],
        before_state: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Write the change; returns a before/after record per field."""
        catalog.apply(entity_ref, change)
        return self.describe(change, before_state)

    def describe(self, change: Dict[str, Any], before_state: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": self.opportunity_type,
            "fields": {
                name: {"before": before_state.get(name), "after": value}
                for name, value in change["fields"].items()
            },
        }

    def revert(
        self,
        catalog: CatalogService,
        entity_ref: str,
        captured_state: Dict[str, Any],
    ) -> None:
        """Replace the entity with the captured state, field for field."""
        catalog.restore(entity_ref, captured_state)


class ContentRewriteHandler(OpportunityHandler):
    opportunity_type = "content_rewrite"
    category = "content"
    compatibility_key = "listing_content"
    signal_types = (SIGNAL_LOW_SCORE,)
    target_fields = ("description",)
    risk_penalty = 5.0
    base_safety = 10.0
    magnitude_weight = 40.0
    label = "Rewrite product content"


class ConversionFixHandler(OpportunityHandler):
    opportunity_type = "conversion_fix"
    category = "conversion"
    compatibility_key = "listing_content"
    signal_types = (SIGNAL_HIGH_TRAFFIC_LOW_CONVERSION, SIGNAL_REVENUE_DROP)
    target_fields = ("title", "description")
    risk_penalty = 10.0
    base_safety = 20.0
    magnitude_weight = 40.0
    label = "Fix conversion blockers"


class PriceAdjustmentHandler(OpportunityHandler):
    opportunity_type = "price_adjustment"
    category = "pricing"
    compatibility_key = "pricing"
    signal_types = (SIGNAL_PRICE_ABOVE_MARKET,)
    target_fields = ("price",)
    risk_penalty = 25.0
    base_safety = 35.0
    magnitude_weight = 100.0
    label = "Bring price in line with market"


class FoundationalTitleHandler(OpportunityHandler):
    opportunity_type = "foundational_title_clarity"
    category = "foundational"
    compatibility_key = "foundational_title"
    signal_types = (SIGNAL_FOUNDATIONAL_TITLE,)
    target_fields = ("title",)
    risk_penalty = 1.0
    base_safety = 5.0
    magnitude_weight = 20.0
    label = "Clarify product title"


class FoundationalDescriptionHandler(OpportunityHandler):
    opportunity_type = "foundational_description_clarity"
    category = "foundational"
    compatibility_key = "foundational_description"
    signal_types = (SIGNAL_FOUNDATIONAL_DESCRIPTION,)
    target_fields = ("description",)
    risk_penalty = 1.0
    base_safety = 8.0
    magnitude_weight = 20.0
    label = "Clarify product description"


class FoundationalTrustHandler(OpportunityHandler):
    opportunity_type = "foundational_trust_signals"
    category = "foundational"
    compatibility_key = "foundational_trust"
    signal_types = (SIGNAL_FOUNDATIONAL_TRUST,)
    target_fields = ("trust_badges",)
    risk_penalty = 1.0
    base_safety = 5.0
    magnitude_weight = 10.0
    label = "Add trust signals"


# =============================================================================
# REGISTRY
# =============================================================================

OPPORTUNITY_HANDLERS: Dict[str, OpportunityHandler] = {
    handler.opportunity_type: handler
    for handler in (
        ContentRewriteHandler(),
        ConversionFixHandler(),
        PriceAdjustmentHandler(),
        FoundationalTitleHandler(),
        FoundationalDescriptionHandler(),
        FoundationalTrustHandler(),
    )
}

SIGNAL_TO_HANDLER: Dict[str, OpportunityHandler] = {
    signal_type: handler
    for handler in OPPORTUNITY_HANDLERS.values()
    for signal_type in handler.signal_types
}


def handler_for_type(opportunity_type: str) -> OpportunityHandler:
    handler = OPPORTUNITY_HANDLERS.get(opportunity_type)
    if handler is None:
        raise DataIntegrityError(f"Unknown opportunity type: {opportunity_type}")
    return handler


def handler_for_signal(signal_type: str) -> Optional[OpportunityHandler]:
    return SIGNAL_TO_HANDLER.get(signal_type)


def known_signal_types() -> List[str]:
    return sorted(SIGNAL_TO_HANDLER)
