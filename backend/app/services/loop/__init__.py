"""
Opportunity Loop Services

Signal -> Opportunity -> Gate -> Execute -> Prove -> Learn.

- SignalScanner: friction detection with cold-start fallback
- OpportunitySynthesizer: grouping, scoring and ranking
- AutonomyGate: pure auto/approve/reject decision
- ApprovalQueue: first-writer-wins human review
- ExecutionEngine: claim, snapshot, apply
- ProofEvaluator: resumable before/after measurement
- RollbackManager: exact restore from snapshot
- PatternLearner: success priors for scoring
"""

from .state_machine import OpportunityStateMachine
from .snapshot_store import SnapshotStore
from .signal_scanner import SignalScanner
from .synthesizer import OpportunitySynthesizer
from .autonomy_gate import AutonomyGate, decide, resolve_policy, set_policy
from .approval_queue import ApprovalQueue
from .execution_engine import ExecutionEngine
from .proof_evaluator import ProofEvaluator
from .rollback_manager import RollbackManager
from .pattern_learner import PatternLearner
from .loop_controller import LoopController
from .worker_pool import LoopWorkerPool, get_worker_pool, set_worker_pool
from .scheduler import LoopScheduler
from .collaborators import (
    Collaborators,
    build_in_memory_collaborators,
    get_collaborators,
    set_collaborators,
)

__all__ = [
    'OpportunityStateMachine',
    'SnapshotStore',
    'SignalScanner',
    'OpportunitySynthesizer',
    'AutonomyGate',
    'decide',
    'resolve_policy',
    'set_policy',
    'ApprovalQueue',
    'ExecutionEngine',
    'ProofEvaluator',
    'RollbackManager',
    'PatternLearner',
    'LoopController',
    'LoopWorkerPool',
    'get_worker_pool',
    'set_worker_pool',
    'LoopScheduler',
    # Collaborators
    'Collaborators',
    'build_in_memory_collaborators',
    'get_collaborators',
    'set_collaborators',
]
