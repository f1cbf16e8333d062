"""
Opportunity Loop - FastAPI Application

Main entry point for the Opportunity Loop backend.

Architecture:
- Entities + indicators -> SignalScanner -> Signals
- Signals -> OpportunitySynthesizer -> ranked Opportunities
- Opportunity -> AutonomyGate -> ApprovalQueue | ExecutionEngine
- ExecutionEngine (snapshot, apply) -> ProofEvaluator -> completed | RollbackManager
- Proven successes -> PatternLearner -> scoring priors
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import opportunities_router, autonomy_router, scheduler_router
from .database import SessionLocal, init_db
from .services.loop import LoopWorkerPool, get_collaborators, set_worker_pool


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and the background worker pool; drain the pool on shutdown."""
    init_db()
    pool = LoopWorkerPool(SessionLocal, get_collaborators())
    set_worker_pool(pool)
    try:
        yield
    finally:
        set_worker_pool(None)
        pool.shutdown(wait=True)

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Opportunity Loop",
    description="""
    Opportunity Loop - Autonomous Opportunity Execution

    Turns detected performance problems on catalog entities into safely
    applied, measured and reversible changes.

    ## Pipeline
    1. **Scan**: entities + indicators -> Signals
    2. **Synthesize**: Signals -> ranked Opportunities
    3. **Gate**: autonomy policy -> auto-execute, approval or reject
    4. **Execute**: snapshot first, then apply
    5. **Prove**: before/after metric after the window; negative -> rollback
    6. **Learn**: proven wins raise the category's scoring prior

    ## Key Principles
    - At most one opportunity in flight per entity (database enforced)
    - No change without a snapshot taken first
    - Manual approval is the default; autonomy is opted into
    - Metrics outages defer proof, they never guess a verdict
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(opportunities_router)
app.include_router(autonomy_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Opportunity Loop",
        "version": "1.0.0",
        "description": "Autonomous Opportunity Execution",
        "docs": "/docs",
        "loop": ["scan", "synthesize", "gate", "execute", "prove", "learn"],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
