"""
Opportunity Loop - Dry-Run Script

Exercises the full loop against in-memory collaborators to prove:
1. A tenant with no history still gets a (foundational) opportunity
2. Safe opportunities auto-execute under a full-autonomy policy
3. A positive proof completes the opportunity and teaches the learner
4. A negative proof restores the entity exactly from its snapshot
5. approve_only entities wait for a reviewer; a second approval is refused

Run with: python dry_run_loop.py
Uses DRY_RUN_DATABASE_URL (default: a local SQLite file).
"""
import os
import sys

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy.orm import sessionmaker

from app.config import LoopSettings
from app.database import Base, build_engine
from app.models.db_models import (
    AutonomyLevel, RiskTolerance, OpportunityStatus, ApprovalStatus, SnapshotDB,
)
from app.services.loop import (
    ApprovalQueue, LoopController, PatternLearner, ProofEvaluator,
    build_in_memory_collaborators, set_policy,
)
from app.services.loop.errors import ApprovalAlreadyResolvedError
from app.services.loop.snapshot_store import compute_state_hash

# Database connection
DATABASE_URL = os.getenv("DRY_RUN_DATABASE_URL", "sqlite:///./dry_run_loop.db")
engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TENANT = "dry-run-shop"
COLD_TENANT = "dry-run-new-shop"


def print_header(step: int, title: str):
    """Print a formatted step header."""
    print(f"\n{'='*70}")
    print(f"STEP {step}: {title}")
    print('='*70)


def print_success(msg: str):
    """Print success message."""
    print(f"  [OK] {msg}")


def print_fail(msg: str):
    """Print failure message."""
    print(f"  [FAIL] {msg}")


def print_info(msg: str):
    """Print info message."""
    print(f"  [INFO] {msg}")


# =============================================================================
# STEP 1: COLD START
# =============================================================================

def step1_cold_start(db, collaborators, context: dict):
    print_header(1, "COLD START FALLBACK")

    collaborators.catalog.add_entity(COLD_TENANT, "new-1", {"title": "plain mug", "description": "", "price": 9.0})
    collaborators.metrics.set_indicators("new-1", revenue=10.0, traffic=3)

    opportunity = LoopController(db, collaborators).next_opportunity(COLD_TENANT)
    if opportunity is None:
        print_fail("No opportunity returned for a tenant without history")
        return None

    print_info(f"Returned {opportunity.opportunity_type} on {opportunity.entity_ref}")
    if not opportunity.is_foundational:
        print_fail("Expected a foundational opportunity")
        return None
    print_success("Empty history degraded to foundational guidance")
    return context


# =============================================================================
# STEP 2: AUTO-EXECUTION
# =============================================================================

def step2_auto_execute(db, collaborators, context: dict):
    print_header(2, "AUTO-EXECUTE UNDER FULL AUTONOMY")

    set_policy(db, TENANT, AutonomyLevel.FULL, RiskTolerance.MEDIUM)
    db.commit()

    for ref, score in (("sku-1", 40), ("sku-2", 35)):
        collaborators.catalog.add_entity(TENANT, ref, {
            "title": f"widget {ref}", "description": "A widget.", "price": 20.0,
        })
        collaborators.metrics.set_indicators(
            ref, content_score=score, price=20.0, revenue=100.0, traffic=50, conversion=0.05,
        )

    result = LoopController(db, collaborators).run_cycle(TENANT, batch=True)
    print_info(f"Cycle: {result.to_dict()}")

    proving = {}
    for ref in ("sku-1", "sku-2"):
        snapshot = db.query(SnapshotDB).filter(SnapshotDB.entity_ref == ref).first()
        if snapshot is None or snapshot.opportunity.status != OpportunityStatus.PROVING:
            print_fail(f"{ref} was not executed")
            return None
        proving[ref] = snapshot.opportunity_id
        print_info(f"{ref}: snapshot {snapshot.id[:8]} written, change applied")

    print_success("Snapshot written before every change; both opportunities proving")
    context["proving"] = proving
    return context


# =============================================================================
# STEP 3: POSITIVE PROOF
# =============================================================================

def step3_positive_proof(db, collaborators, context: dict):
    print_header(3, "POSITIVE PROOF -> COMPLETED + LEARNED")

    collaborators.metrics.set_indicators("sku-1", revenue=130.0)
    proof = ProofEvaluator(db, collaborators).evaluate(context["proving"]["sku-1"], force=True)
    print_info(f"Verdict: {proof.verdict.value} (relative {proof.relative_delta})")

    pattern = PatternLearner(db, collaborators.settings).get_pattern(TENANT, "content")
    if pattern is None:
        print_fail("Learner recorded nothing")
        return None
    print_info(f"Pattern: n={pattern.sample_size} rate={pattern.success_rate} confidence={pattern.confidence}")
    print_success("Proven win merged into the category prior")
    return context


# =============================================================================
# STEP 4: NEGATIVE PROOF
# =============================================================================

def step4_negative_proof(db, collaborators, context: dict):
    print_header(4, "NEGATIVE PROOF -> ROLLBACK")

    opportunity_id = context["proving"]["sku-2"]
    collaborators.metrics.set_indicators("sku-2", revenue=70.0)
    proof = ProofEvaluator(db, collaborators).evaluate(opportunity_id, force=True)
    print_info(f"Verdict: {proof.verdict.value} (relative {proof.relative_delta})")

    snapshot = db.query(SnapshotDB).filter(SnapshotDB.opportunity_id == opportunity_id).first()
    current = collaborators.catalog.get("sku-2")
    if compute_state_hash(current) != snapshot.state_hash:
        print_fail("Entity differs from its snapshot after rollback")
        return None
    print_success(f"sku-2 restored byte-for-byte; status {snapshot.opportunity.status.value}")
    return context


# =============================================================================
# STEP 5: APPROVAL
# =============================================================================

def step5_approval(db, collaborators, context: dict):
    print_header(5, "APPROVE-ONLY ENTITY")

    collaborators.catalog.add_entity(TENANT, "sku-3", {"title": "gadget", "description": "Gadget.", "price": 50.0})
    collaborators.metrics.set_indicators("sku-3", content_score=20, price=50.0, revenue=200.0, traffic=80)
    set_policy(db, TENANT, AutonomyLevel.APPROVE_ONLY, RiskTolerance.LOW, entity_ref="sku-3")
    db.commit()

    result = LoopController(db, collaborators).run_cycle(TENANT)
    if result.approval_request_id is None:
        print_fail("No approval request was created")
        return None
    print_info(f"Gate said {result.gate_decision.value}; request {result.approval_request_id[:8]}")

    queue = ApprovalQueue(db, collaborators)
    execution = queue.resolve(result.approval_request_id, ApprovalStatus.APPROVED, reviewer="dry-run")
    print_info(f"First approval executed: success={execution.success}")

    try:
        queue.resolve(result.approval_request_id, ApprovalStatus.APPROVED, reviewer="dry-run")
        print_fail("Second approval was accepted")
        return None
    except ApprovalAlreadyResolvedError:
        print_success("Second approval refused; exactly one execution")

    catalog_writes = [c for c in collaborators.catalog.apply_calls if c["entity_ref"] == "sku-3"]
    print_info(f"Catalog writes for sku-3: {len(catalog_writes)}")
    return context


def main():
    """Run the full dry-run."""
    print("\n" + "="*70)
    print("OPPORTUNITY LOOP - DRY-RUN EXECUTION")
    print("="*70)
    print(f"Database: {DATABASE_URL}")
    print("="*70)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    settings = LoopSettings(retry_base_delay_seconds=0.0)
    collaborators = build_in_memory_collaborators(settings)
    db = SessionLocal()

    try:
        context = {}
        for step in (
            step1_cold_start,
            step2_auto_execute,
            step3_positive_proof,
            step4_negative_proof,
            step5_approval,
        ):
            context = step(db, collaborators, context)
            if context is None:
                print(f"\n[ABORT] {step.__name__} failed - cannot continue")
                return False

        print("\n" + "="*70)
        print("DRY-RUN EXECUTION COMPLETE")
        print("="*70)
        print(f"Notifications sent: {len(collaborators.notifications.sent)}")
        return True

    except Exception as e:
        print(f"\n[ERROR] Dry-run failed: {e}")
        import traceback
        traceback.print_exc()
        db.rollback()
        return False

    finally:
        db.close()


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
