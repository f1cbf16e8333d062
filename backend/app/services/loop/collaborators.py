"""
External Collaborator Contracts

The loop reaches the outside world only through these four interfaces:
- CatalogService: read, change and restore managed entities
- MetricsService: opaque performance indicators per entity
- ProposalService: concrete change payloads for an opportunity type
- NotificationService: fire-and-forget delivery to humans

In-memory implementations are provided for local runs, the dry-run script
and tests. Production deployments register their own adapters with
set_collaborators().
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...config import LoopSettings, get_settings
from .errors import MetricsUnavailableError, ProposalError, TransientCollaboratorError


logger = logging.getLogger(__name__)


# =============================================================================
# CONTRACTS
# =============================================================================

class CatalogService(ABC):
    """Source of truth for entity state."""

    @abstractmethod
    def list_entities(self, tenant_id: str, limit: int) -> List[str]:
        """Entity refs belonging to the tenant, at most `limit`."""

    @abstractmethod
    def get(self, entity_ref: str) -> Dict[str, Any]:
        """Full current state of an entity."""

    @abstractmethod
    def apply(self, entity_ref: str, change: Dict[str, Any]) -> None:
        """Apply a change. Must be safe to retry."""

    @abstractmethod
    def restore(self, entity_ref: str, prior_state: Dict[str, Any]) -> None:
        """Replace the entity state with prior_state, field for field."""


class MetricsService(ABC):
    """Performance indicators (traffic, conversion, revenue, ...)."""

    @abstractmethod
    def performance_indicators(self, entity_ref: str) -> Dict[str, float]:
        """Raises MetricsUnavailableError when the source is down."""


class ProposalService(ABC):
    """Generates the concrete change for an opportunity."""

    @abstractmethod
    def propose(
        self,
        opportunity_type: str,
        entity_state: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Return {"fields": {...}} describing the new field values."""


class NotificationService(ABC):
    """Fire-and-forget delivery. Callers never depend on success."""

    @abstractmethod
    def notify(self, tenant_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass
class Collaborators:
    """Bundle of collaborator adapters plus loop settings."""
    catalog: CatalogService
    metrics: MetricsService
    proposals: ProposalService
    notifications: NotificationService
    settings: LoopSettings = field(default_factory=get_settings)

    def notify_safely(self, tenant_id: str, kind: str, payload: Dict[str, Any]) -> None:
        """Deliver a notification; failures are logged and swallowed."""
        try:
            self.notifications.notify(tenant_id, kind, payload)
        except Exception as e:
            logger.warning(f"Notification '{kind}' for tenant {tenant_id} failed: {e}")


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryCatalogService(CatalogService):
    """
    Dict-backed catalog.

    Entity refs are namespaced by tenant when registered through add_entity.
    `fail_next_applies` makes the next N apply() calls raise a transient
    error, which is how retry behaviour is exercised.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entities: Dict[str, Dict[str, Any]] = {}
        self._tenants: Dict[str, List[str]] = {}
        self.apply_calls: List[Dict[str, Any]] = []
        self.restore_calls: List[Dict[str, Any]] = []
        self.fail_next_applies = 0
        self.fail_restores = False

    def add_entity(self, tenant_id: str, entity_ref: str, state: Dict[str, Any]) -> None:
        with self._lock:
            self._entities[entity_ref] = copy.deepcopy(state)
            refs = self._tenants.setdefault(tenant_id, [])
            if entity_ref not in refs:
                refs.append(entity_ref)

    def list_entities(self, tenant_id: str, limit: int) -> List[str]:
        with self._lock:
            return list(self._tenants.get(tenant_id, []))[:limit]

    def get(self, entity_ref: str) -> Dict[str, Any]:
        with self._lock:
            if entity_ref not in self._entities:
                raise KeyError(f"Unknown entity {entity_ref}")
            return copy.deepcopy(self._entities[entity_ref])

    def apply(self, entity_ref: str, change: Dict[str, Any]) -> None:
        with self._lock:
            self.apply_calls.append({"entity_ref": entity_ref, "change": copy.deepcopy(change)})
            if self.fail_next_applies > 0:
                self.fail_next_applies -= 1
                raise TransientCollaboratorError("catalog temporarily unavailable")
            state = self._entities.setdefault(entity_ref, {})
            state.update(copy.deepcopy(change.get("fields", {})))

    def restore(self, entity_ref: str, prior_state: Dict[str, Any]) -> None:
        with self._lock:
            self.restore_calls.append({"entity_ref": entity_ref})
            if self.fail_restores:
                raise TransientCollaboratorError("catalog restore unavailable")
            self._entities[entity_ref] = copy.deepcopy(prior_state)


class InMemoryMetricsService(MetricsService):
    """Indicator table keyed by entity ref."""

    def __init__(self):
        self._indicators: Dict[str, Dict[str, float]] = {}
        self.unavailable: set = set()

    def set_indicators(self, entity_ref: str, **indicators: float) -> None:
        self._indicators.setdefault(entity_ref, {}).update(indicators)

    def performance_indicators(self, entity_ref: str) -> Dict[str, float]:
        if entity_ref in self.unavailable:
            raise MetricsUnavailableError(f"Metrics unavailable for {entity_ref}")
        return dict(self._indicators.get(entity_ref, {}))


class TemplateProposalService(ProposalService):
    """
    Deterministic proposer used when no generation backend is configured.

    Produces small, reviewable edits; richer generators plug in behind the
    same interface.
    """

    def propose(
        self,
        opportunity_type: str,
        entity_state: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        target_fields = context.get("target_fields") or []
        if not target_fields:
            raise ProposalError(f"No target fields for {opportunity_type}")

        fields: Dict[str, Any] = {}
        for name in target_fields:
            current = entity_state.get(name)
            if name == "price":
                if current is None:
                    raise ProposalError("Entity has no price to adjust")
                step = float(context.get("magnitude", 0.05))
                fields[name] = round(float(current) * (1 - step), 2)
            elif name == "trust_badges":
                fields[name] = ["Secure Checkout", "Satisfaction Guaranteed", "Fast Shipping"]
            else:
                title = entity_state.get("title") or "this product"
                base = (current or "").strip()
                if name == "title":
                    fields[name] = base.title() if base else title.title()
                elif name == "seo_title":
                    fields[name] = f"{title} | Buy Online"[:60]
                else:
                    fields[name] = (
                        f"{base}\n\nWhy customers choose {title}: clear benefits, "
                        f"honest specifications and fast delivery."
                    ).strip()
        return {"fields": fields}


class LoggingNotificationService(NotificationService):
    """Writes notifications to the log and keeps them for inspection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, tenant_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"tenant_id": tenant_id, "kind": kind, "payload": payload})
        logger.info(f"[notify] tenant={tenant_id} kind={kind}")


# =============================================================================
# REGISTRY
# =============================================================================

_collaborators: Optional[Collaborators] = None
_registry_lock = threading.Lock()


def build_in_memory_collaborators(settings: Optional[LoopSettings] = None) -> Collaborators:
    """Collaborators backed entirely by process memory."""
    return Collaborators(
        catalog=InMemoryCatalogService(),
        metrics=InMemoryMetricsService(),
        proposals=TemplateProposalService(),
        notifications=LoggingNotificationService(),
        settings=settings or get_settings(),
    )


def set_collaborators(collaborators: Collaborators) -> None:
    global _collaborators
    with _registry_lock:
        _collaborators = collaborators


def get_collaborators() -> Collaborators:
    """FastAPI dependency; defaults to in-memory adapters."""
    global _collaborators
    with _registry_lock:
        if _collaborators is None:
            _collaborators = build_in_memory_collaborators()
        return _collaborators
