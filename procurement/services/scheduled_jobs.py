"""
Procurement Platform
Scheduled Jobs.

Jobs:
    - sla_sweep: announce pending approval requests past their deadline
"""

from __future__ import annotations

import logging
from typing import Any

from procurement.services.scheduler_service import register_job
from procurement.services.sla_sweeper import run_sla_sweep

logger = logging.getLogger(__name__)


@register_job("sla_sweep")
def sweep_sla_breaches(app) -> dict[str, Any]:
    """Emit approval.sla_breached for every overdue pending approval request."""
    results = run_sla_sweep()
    logger.info("SLA sweep job: %s", results, extra={"job_name": "sla_sweep"})
    return results
