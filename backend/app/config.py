"""
Opportunity Loop - Tunable Configuration

Scoring weights, materiality thresholds and timing constants for the
execution loop. Every value can be overridden with a LOOP_* environment
variable so operators can tune the loop without code changes.
"""
import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# =============================================================================
# DEFAULTS
# =============================================================================

# Highest safety score (lower = safer) each risk tolerance tier accepts for
# unattended execution.
DEFAULT_TOLERANCE_CEILINGS: Dict[str, float] = {
    "low": 25.0,
    "medium": 50.0,
    "high": 75.0,
}


@dataclass
class LoopSettings:
    """Runtime configuration for the opportunity loop."""

    # Autonomy gate
    tolerance_ceilings: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TOLERANCE_CEILINGS)
    )

    # Synthesizer scoring
    base_confidence_weight: float = 0.5
    # Per opportunity type overrides of the handler risk penalty
    risk_penalties: Dict[str, float] = field(default_factory=dict)

    # Proof evaluation
    materiality_threshold: float = 0.10   # relative delta, 10%
    proof_window_hours: int = 72
    proof_retry_minutes: int = 60
    proof_metric: str = "revenue"

    # Execution
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    collaborator_timeout_seconds: float = 3.0
    worker_pool_size: int = 4

    # Scanner
    scan_entity_limit: int = 200
    cold_start_min_history: int = 3
    signal_ttl_days: int = 7

    # Learner
    min_learning_exposure: int = 10
    confidence_k: float = 5.0

    @classmethod
    def from_env(cls) -> "LoopSettings":
        """Build settings from LOOP_* environment variables."""
        ceilings = {
            tier: _env_float(f"LOOP_TOLERANCE_{tier.upper()}", default)
            for tier, default in DEFAULT_TOLERANCE_CEILINGS.items()
        }
        return cls(
            tolerance_ceilings=ceilings,
            base_confidence_weight=_env_float("LOOP_BASE_CONFIDENCE_WEIGHT", 0.5),
            risk_penalties=json.loads(os.getenv("LOOP_RISK_PENALTIES", "{}")),
            materiality_threshold=_env_float("LOOP_MATERIALITY_THRESHOLD", 0.10),
            proof_window_hours=_env_int("LOOP_PROOF_WINDOW_HOURS", 72),
            proof_retry_minutes=_env_int("LOOP_PROOF_RETRY_MINUTES", 60),
            proof_metric=os.getenv("LOOP_PROOF_METRIC", "revenue"),
            retry_attempts=_env_int("LOOP_RETRY_ATTEMPTS", 3),
            retry_base_delay_seconds=_env_float("LOOP_RETRY_BASE_DELAY", 0.5),
            collaborator_timeout_seconds=_env_float("LOOP_COLLABORATOR_TIMEOUT", 3.0),
            worker_pool_size=_env_int("LOOP_WORKER_POOL_SIZE", 4),
            scan_entity_limit=_env_int("LOOP_SCAN_ENTITY_LIMIT", 200),
            cold_start_min_history=_env_int("LOOP_COLD_START_MIN_HISTORY", 3),
            signal_ttl_days=_env_int("LOOP_SIGNAL_TTL_DAYS", 7),
            min_learning_exposure=_env_int("LOOP_MIN_LEARNING_EXPOSURE", 10),
            confidence_k=_env_float("LOOP_CONFIDENCE_K", 5.0),
        )


@lru_cache(maxsize=1)
def get_settings() -> LoopSettings:
    """Process-wide settings, read once from the environment."""
    return LoopSettings.from_env()
