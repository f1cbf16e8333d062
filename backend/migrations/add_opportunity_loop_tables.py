"""
Migration: Add Opportunity Loop tables.

Creates 8 tables:
1. loop_signals - detected friction per entity
2. loop_opportunities - scored units of work (state machine)
3. loop_opportunity_events - immutable transition trail
4. loop_snapshots - pre-mutation entity capture
5. loop_proof_records - before/after measurement
6. loop_learned_patterns - per-category success priors
7. loop_approval_requests - human review
8. loop_autonomy_policies - tenant/entity autonomy

The partial unique index on loop_opportunities is what keeps a single
opportunity in flight per entity across worker processes.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/opportunity_loop"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create all opportunity loop tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # TABLE 1: loop_signals
        # =================================================================
        if table_exists(conn, "loop_signals"):
            print("loop_signals table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_signals (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(64) NOT NULL,
                    entity_ref VARCHAR(255) NOT NULL,
                    signal_type VARCHAR(64) NOT NULL,
                    estimated_impact DOUBLE PRECISION DEFAULT 0,
                    confidence INTEGER DEFAULT 50,
                    magnitude DOUBLE PRECISION DEFAULT 0,
                    is_foundational BOOLEAN DEFAULT FALSE,
                    signal_data JSON,
                    status VARCHAR(20) NOT NULL DEFAULT 'new',
                    detected_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP,
                    consumed_by VARCHAR(36)
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_signals_tenant_id ON loop_signals(tenant_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_loop_signal_dedup ON loop_signals(tenant_id, entity_ref, signal_type, status)
            """))
            print("Created loop_signals table")

        # =================================================================
        # TABLE 2: loop_opportunities
        # =================================================================
        if table_exists(conn, "loop_opportunities"):
            print("loop_opportunities table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_opportunities (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(64) NOT NULL,
                    entity_ref VARCHAR(255) NOT NULL,
                    opportunity_type VARCHAR(64) NOT NULL,
                    category VARCHAR(64) NOT NULL,
                    compatibility_key VARCHAR(64) NOT NULL,
                    source_signal_ids JSON NOT NULL,
                    is_foundational BOOLEAN DEFAULT FALSE,
                    priority_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                    safety_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                    estimated_impact DOUBLE PRECISION NOT NULL DEFAULT 0,
                    magnitude DOUBLE PRECISION NOT NULL DEFAULT 0,
                    latest_signal_at TIMESTAMP,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    error_detail TEXT,
                    proposed_change JSON,
                    applied_changes JSON,
                    proof_due_at TIMESTAMP,
                    proof_attempts INTEGER DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP,
                    executed_at TIMESTAMP,
                    completed_at TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_opportunities_tenant_id ON loop_opportunities(tenant_id)
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_opportunities_proof_due_at ON loop_opportunities(proof_due_at)
            """))
            conn.execute(text("""
                CREATE INDEX idx_loop_opportunity_tenant_status ON loop_opportunities(tenant_id, status)
            """))
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_loop_opportunity_in_flight
                ON loop_opportunities(tenant_id, entity_ref)
                WHERE status IN ('executing', 'proving')
            """))
            print("Created loop_opportunities table")

        # =================================================================
        # TABLE 3: loop_opportunity_events
        # =================================================================
        if table_exists(conn, "loop_opportunity_events"):
            print("loop_opportunity_events table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_opportunity_events (
                    id VARCHAR(36) PRIMARY KEY,
                    opportunity_id VARCHAR(36) NOT NULL REFERENCES loop_opportunities(id) ON DELETE CASCADE,
                    from_status VARCHAR(20),
                    to_status VARCHAR(20) NOT NULL,
                    trigger VARCHAR(100) NOT NULL,
                    actor VARCHAR(20) NOT NULL DEFAULT 'system',
                    detail JSON,
                    created_at TIMESTAMP NOT NULL
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_opportunity_events_opportunity_id ON loop_opportunity_events(opportunity_id)
            """))
            print("Created loop_opportunity_events table")

        # =================================================================
        # TABLE 4: loop_snapshots
        # =================================================================
        if table_exists(conn, "loop_snapshots"):
            print("loop_snapshots table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_snapshots (
                    id VARCHAR(36) PRIMARY KEY,
                    opportunity_id VARCHAR(36) NOT NULL UNIQUE REFERENCES loop_opportunities(id) ON DELETE CASCADE,
                    entity_ref VARCHAR(255) NOT NULL,
                    captured_state JSON NOT NULL,
                    state_hash VARCHAR(64) NOT NULL,
                    reason VARCHAR(100) NOT NULL,
                    can_rollback BOOLEAN NOT NULL DEFAULT TRUE,
                    captured_at TIMESTAMP NOT NULL
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_snapshots_entity_ref ON loop_snapshots(entity_ref)
            """))
            print("Created loop_snapshots table")

        # =================================================================
        # TABLE 5: loop_proof_records
        # =================================================================
        if table_exists(conn, "loop_proof_records"):
            print("loop_proof_records table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_proof_records (
                    id VARCHAR(36) PRIMARY KEY,
                    opportunity_id VARCHAR(36) NOT NULL UNIQUE REFERENCES loop_opportunities(id) ON DELETE CASCADE,
                    metric_name VARCHAR(64) NOT NULL,
                    before_metric DOUBLE PRECISION NOT NULL,
                    after_metric DOUBLE PRECISION NOT NULL,
                    delta DOUBLE PRECISION NOT NULL,
                    relative_delta DOUBLE PRECISION,
                    exposure DOUBLE PRECISION DEFAULT 0,
                    verdict VARCHAR(20) NOT NULL,
                    measured_at TIMESTAMP NOT NULL
                )
            """))
            print("Created loop_proof_records table")

        # =================================================================
        # TABLE 6: loop_learned_patterns
        # =================================================================
        if table_exists(conn, "loop_learned_patterns"):
            print("loop_learned_patterns table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_learned_patterns (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(64) NOT NULL,
                    category VARCHAR(64) NOT NULL,
                    pattern_data JSON,
                    success_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
                    sample_size INTEGER NOT NULL DEFAULT 0,
                    confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP,
                    CONSTRAINT uq_loop_pattern_category UNIQUE (tenant_id, category)
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_learned_patterns_tenant_id ON loop_learned_patterns(tenant_id)
            """))
            print("Created loop_learned_patterns table")

        # =================================================================
        # TABLE 7: loop_approval_requests
        # =================================================================
        if table_exists(conn, "loop_approval_requests"):
            print("loop_approval_requests table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_approval_requests (
                    id VARCHAR(36) PRIMARY KEY,
                    opportunity_id VARCHAR(36) NOT NULL UNIQUE REFERENCES loop_opportunities(id) ON DELETE CASCADE,
                    tenant_id VARCHAR(64) NOT NULL,
                    recommended_action JSON NOT NULL,
                    rationale TEXT NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    reviewed_at TIMESTAMP,
                    reviewed_by VARCHAR(100),
                    created_at TIMESTAMP NOT NULL
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_approval_requests_tenant_id ON loop_approval_requests(tenant_id)
            """))
            print("Created loop_approval_requests table")

        # =================================================================
        # TABLE 8: loop_autonomy_policies
        # =================================================================
        if table_exists(conn, "loop_autonomy_policies"):
            print("loop_autonomy_policies table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE loop_autonomy_policies (
                    id VARCHAR(36) PRIMARY KEY,
                    tenant_id VARCHAR(64) NOT NULL,
                    entity_ref VARCHAR(255),
                    autonomy_level VARCHAR(20) NOT NULL DEFAULT 'approve_only',
                    risk_tolerance VARCHAR(20) NOT NULL DEFAULT 'low',
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP,
                    CONSTRAINT uq_loop_autonomy_scope UNIQUE (tenant_id, entity_ref)
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_loop_autonomy_policies_tenant_id ON loop_autonomy_policies(tenant_id)
            """))
            print("Created loop_autonomy_policies table")

        conn.commit()
        print("\nOpportunity loop migration complete")


if __name__ == "__main__":
    run_migration()
