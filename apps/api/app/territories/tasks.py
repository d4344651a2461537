from __future__ import annotations

import logging
from typing import Any

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.territories.service import SYSTEM_ACTOR, territory_service


logger = logging.getLogger("app.territories")


def run_reconcile() -> dict[str, Any]:
    session = SessionLocal()
    try:
        result = territory_service.reconcile_counters(session, SYSTEM_ACTOR)
    finally:
        session.close()
    return result.model_dump(mode="json")


@celery_app.task(name="app.territories.reconcile_counters")
def reconcile_counters_task() -> dict[str, Any]:
    """Periodic sweep re-deriving every territory's counters."""

    return run_reconcile()
