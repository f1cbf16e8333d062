#!/usr/bin/env python3
"""
Tenant Autonomy Seed Script
Sets a tenant's default autonomy policy and prints an operator token.

Usage:
    python -m scripts.seed_tenant_policy <tenant_id> <autonomy_level> [risk_tolerance]

Example:
    python -m scripts.seed_tenant_policy acme full low
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
from app.models.db_models import AutonomyLevel, RiskTolerance
from app.auth import create_access_token
from app.services.loop import set_policy


def seed_tenant_policy(tenant_id: str, autonomy_level: str, risk_tolerance: str = "low") -> bool:
    """Create or update the tenant default policy."""
    try:
        level = AutonomyLevel(autonomy_level)
        tolerance = RiskTolerance(risk_tolerance)
    except ValueError:
        print(f"Error: autonomy_level must be one of {[l.value for l in AutonomyLevel]}")
        print(f"       risk_tolerance must be one of {[t.value for t in RiskTolerance]}")
        return False

    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        set_policy(db, tenant_id, level, tolerance)
        db.commit()

        print("Tenant policy saved!")
        print(f"  Tenant:          {tenant_id}")
        print(f"  Autonomy level:  {level.value}")
        print(f"  Risk tolerance:  {tolerance.value}")
        print(f"  Operator token:  {create_access_token(tenant_id)}")
        return True

    except Exception as e:
        db.rollback()
        print(f"Error saving tenant policy: {e}")
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    tenant_id = sys.argv[1]
    autonomy_level = sys.argv[2]
    risk_tolerance = sys.argv[3] if len(sys.argv) == 4 else "low"

    success = seed_tenant_policy(tenant_id, autonomy_level, risk_tolerance)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
