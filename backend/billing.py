"""Account charges for produced images.

Each successful job is charged once. Charging is idempotent per job id:
the store ignores a second expense for the same job, and a process-local
set covers the case where no store is configured.
"""

import structlog

from config import settings
from models.database import Store
from models.jobs import JobResult

logger = structlog.get_logger(__name__)


class BillingLedger:
    """Charges accounts for successful generation jobs.

    Attributes:
        store: Where expenses are persisted (optional).
        cost_per_image: Amount charged per produced image.
    """

    def __init__(self, store: Store | None = None, cost_per_image: float | None = None) -> None:
        self.store = store
        self.cost_per_image = (
            settings.image_cost if cost_per_image is None else cost_per_image
        )
        self._charged: set[str] = set()

    async def charge(self, user_id: str, result: JobResult) -> bool:
        """Charge the account for a job's images.

        Args:
            user_id: The account to charge.
            result: The job's terminal result.

        Returns:
            True if a new charge was recorded; False for failed jobs, jobs
            that were already charged and charges the store did not write.
        """
        if not result.done:
            return False

        job_id = result.job.id
        if job_id in self._charged:
            logger.debug("billing_already_charged", job_id=job_id)
            return False

        amount = self.cost_per_image * max(len(result.images), 1)
        charged = True
        if self.store is not None:
            charged = await self.store.record_expense(job_id, user_id, amount)

        if not charged:
            # Left out of _charged so a later attempt can still record it
            logger.warning(
                "billing_charge_failed", job_id=job_id, user_id=user_id, amount=amount
            )
            return False

        self._charged.add(job_id)
        logger.info("billing_charged", job_id=job_id, user_id=user_id, amount=amount)
        return True
