"""
Listing lifecycle rules.

`is_locked` is true exactly when the status is `claimed` or `completed`.
Every write of either column goes through `lock_fields` / `apply_status`
so the two never disagree.
"""
from errors import Forbidden
from models import CLAIMABLE_STATUSES, LISTING_STATUSES, LOCKED_STATUSES, CLAIMED, OPEN


def can_mutate_listing(listing):
    """Donor edits and deletes are legal only on open, unlocked listings."""
    return listing.status in CLAIMABLE_STATUSES and not listing.is_locked


def ensure_listing_mutable(listing, action='update'):
    if not can_mutate_listing(listing):
        raise Forbidden(
            f'Cannot {action} claimed or completed listing',
            current_status=listing.status,
        )


def is_claimable(listing):
    return listing.status in CLAIMABLE_STATUSES and not listing.is_locked


def lock_fields(locked):
    """Column values for locking a listing on claim, or re-opening it."""
    if locked:
        return {'is_locked': True, 'status': CLAIMED}
    return {'is_locked': False, 'status': OPEN}


def apply_status(listing, status):
    if status not in LISTING_STATUSES:
        raise ValueError(f'Unknown listing status: {status}')
    listing.status = status
    listing.is_locked = status in LOCKED_STATUSES
    return listing


def is_coherent(listing):
    return listing.is_locked == (listing.status in LOCKED_STATUSES)
