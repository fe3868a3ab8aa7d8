import logging
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from leave_admin.core.config import settings
from leave_admin.core.exceptions import ConcurrentModificationError

logger = logging.getLogger(__name__)

# Bounded retry for lost balance races. The wrapped call must roll back its own
# transaction before raising so every attempt starts clean.
retry_on_conflict = retry(
    stop=stop_after_attempt(settings.ledger.max_retries),
    wait=wait_exponential(multiplier=settings.ledger.retry_wait_seconds, max=1),
    retry=retry_if_exception_type(ConcurrentModificationError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)
