"""
RFP status boundary.

The approval engine is the only caller; it mutates RFP status on
terminal process transitions.  Changes are flushed, not committed, so
they land in the engine's transaction.
"""

import logging
from datetime import datetime, timezone

from procurement.core.exceptions import NotFoundError, ValidationError
from procurement.models import db
from procurement.models.rfp import RFP, RFP_STATUSES

logger = logging.getLogger(__name__)


def set_rfp_status(rfp_id: int, status: str) -> RFP:
    if status not in RFP_STATUSES:
        raise ValidationError(
            f"Invalid RFP status '{status}'",
            details={"allowed": sorted(RFP_STATUSES), "provided": status},
        )
    rfp = db.session.get(RFP, rfp_id)
    if rfp is None:
        raise NotFoundError(resource="RFP", resource_id=rfp_id)

    previous = rfp.status
    rfp.status = status
    rfp.updated_at = datetime.now(timezone.utc)
    db.session.flush()
    logger.info("RFP %s status %s -> %s", rfp_id, previous, status,
                extra={"rfp_id": rfp_id, "tenant_id": rfp.tenant_id})
    return rfp
