"""
Loop Scheduler

Recurring jobs for the opportunity loop.

AUTHORITY: SYSTEM - runs from the internal scheduler endpoints, no user
confirmation required.

- run_all_tenants(): one loop cycle per tenant, tenants in parallel, one
  session per tenant task
- run_due_proofs(): evaluate every proving opportunity whose window closed
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import AutonomyPolicyDB, OpportunityDB, SignalDB, utcnow
from .collaborators import Collaborators
from .errors import OpportunityLoopError
from .loop_controller import LoopController
from .proof_evaluator import ProofEvaluator
from .worker_pool import LoopWorkerPool


logger = logging.getLogger(__name__)


class LoopScheduler:
    """
    Usage:
        scheduler = LoopScheduler(SessionLocal, collaborators)
        summary = scheduler.run_all_tenants()
        proofs = scheduler.run_due_proofs()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        collaborators: Collaborators,
        max_workers: Optional[int] = None,
        worker_pool: Optional[LoopWorkerPool] = None,
    ):
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.max_workers = max_workers or collaborators.settings.worker_pool_size
        self.worker_pool = worker_pool

    def known_tenants(self) -> List[str]:
        """Every tenant with a policy, a signal or an opportunity on record."""
        db = self.session_factory()
        try:
            tenants = set()
            for model in (AutonomyPolicyDB, SignalDB, OpportunityDB):
                tenants.update(t for (t,) in db.query(model.tenant_id).distinct())
            return sorted(tenants)
        finally:
            db.close()

    def run_tenant_cycle(self, tenant_id: str, batch: bool = False) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            controller = LoopController(db, self.collaborators, worker_pool=self.worker_pool)
            return controller.run_cycle(tenant_id, batch=batch).to_dict()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def run_all_tenants(self, tenant_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Run a cycle for each tenant in parallel; failures stay per tenant."""
        tenant_ids = tenant_ids if tenant_ids is not None else self.known_tenants()
        cycles: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        if tenant_ids:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="loop-tenant") as pool:
                futures = {pool.submit(self.run_tenant_cycle, t): t for t in tenant_ids}
                for future in as_completed(futures):
                    tenant_id = futures[future]
                    try:
                        cycles.append(future.result())
                    except Exception as e:
                        logger.error(f"Loop cycle for tenant {tenant_id} failed: {e}")
                        errors.append({"tenant_id": tenant_id, "error": str(e)})

        logger.info(f"Ran {len(cycles)} tenant cycles ({len(errors)} errors)")
        return {
            "run_date": utcnow().isoformat(),
            "tenants": len(tenant_ids),
            "cycles_completed": len(cycles),
            "errors": len(errors),
            "details": {
                "cycles": sorted(cycles, key=lambda c: c["tenant_id"]),
                "errors": errors,
            },
        }

    def run_due_proofs(self, limit: int = 50) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            result = ProofEvaluator(db, self.collaborators).run_due(limit=limit)
        except OpportunityLoopError:
            db.rollback()
            raise
        finally:
            db.close()
        return {"run_date": utcnow().isoformat(), **result}
