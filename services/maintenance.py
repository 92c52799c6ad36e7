import logging

from models import utcnow

logger = logging.getLogger(__name__)


def expire_stale_listings(store, now=None):
    """Mark open, unlocked listings past their expiry_time as expired."""
    count = store.expire_listings(now or utcnow())
    if count:
        logger.info("Marked %d listings as expired", count)
    return count


def audit_stuck_listings(store):
    """
    Report locked listings that have no live claim.

    These are left behind when a fallback claim or a cancellation fails
    half way. They are only reported here; re-opening one is an operator
    decision.
    """
    stuck = store.find_stuck_listings()
    if stuck:
        logger.warning("%d listings are locked without a claim: %s", len(stuck), stuck)
    return stuck
