"""
Opportunity Loop Errors

Error taxonomy:
- Transient collaborator errors: retried with bounded backoff
- Data integrity errors: fail fast, never proceed
- Policy violations: refused at the API boundary
- Measurement unavailability: proof is deferred, never guessed
- Rollback failures: operationally fatal, always alerted
"""


class OpportunityLoopError(Exception):
    """Base class for every loop error."""


# =============================================================================
# (a) TRANSIENT COLLABORATOR ERRORS
# =============================================================================

class TransientCollaboratorError(OpportunityLoopError):
    """Timeout, rate limit or other retryable collaborator failure."""


class CollaboratorTimeoutError(TransientCollaboratorError):
    """A collaborator call exceeded its fast-path timeout."""


# =============================================================================
# (b) DATA INTEGRITY ERRORS
# =============================================================================

class DataIntegrityError(OpportunityLoopError):
    """Stored state contradicts what the operation requires."""


class OpportunityNotFoundError(DataIntegrityError):
    def __init__(self, opportunity_id: str):
        super().__init__(f"Opportunity {opportunity_id} not found")
        self.opportunity_id = opportunity_id


class ApprovalRequestNotFoundError(DataIntegrityError):
    def __init__(self, request_id: str):
        super().__init__(f"Approval request {request_id} not found")
        self.request_id = request_id


class InvalidTransitionError(DataIntegrityError):
    """Requested status change is not an edge of the state machine."""


class SnapshotError(DataIntegrityError):
    """Snapshot missing, unreadable or failed to write."""


class CancellationError(DataIntegrityError):
    """Cancellation requested after the catalog write began."""


class ApprovalAlreadyResolvedError(DataIntegrityError):
    """A second reviewer lost the race to resolve an approval request."""


# =============================================================================
# (c) POLICY VIOLATIONS
# =============================================================================

class PolicyViolationError(OpportunityLoopError):
    """Caller attempted an action the autonomy gate forbids."""


# =============================================================================
# (d) MEASUREMENT / PROPOSAL
# =============================================================================

class MetricsUnavailableError(OpportunityLoopError):
    """Metrics service could not provide indicators."""


class ProposalError(OpportunityLoopError):
    """Proposal service failed to produce a change payload."""


class CatalogWriteError(OpportunityLoopError):
    """Non-retryable catalog rejection of a change."""


# =============================================================================
# ROLLBACK
# =============================================================================

class RollbackFailedError(OpportunityLoopError):
    """Restore failed; the entity may be left in the changed state."""
