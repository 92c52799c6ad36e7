"""
Claim arbitration: moves a listing from open to claimed exactly once.

The atomic store procedure is the only path that is safe under concurrent
claims. Only when it is disabled or not installed does the arbitrator run
the three-step fallback (delete claims, lock, insert), after checking the
listing is still claimable, and re-open the listing if the insert fails.
Any other store failure in the procedure is reported as Unavailable. That compensation is best effort: a crash
between lock and re-open leaves a locked listing with no claim, which the
stuck-listing audit reports.

Claims are never retried. The arbitrator holds no in-process locks; the
store transaction is the only mutual exclusion.
"""
import logging

from errors import Forbidden, InvalidState, NotFound, ProcedureUnavailable, Unavailable
from models import CLAIM_CANCELLED, CLAIM_CLAIMED, CLAIM_COMPLETED, CLAIM_IN_PROGRESS, COMPLETED, EXPIRED
from services.lifecycle import is_claimable
from services.notifications import CLAIM_ACCEPTED, recipient_for

logger = logging.getLogger(__name__)

# Statuses an NGO may set directly; completion comes from the delivery and
# cancellation from cancel_claim.
NGO_SETTABLE_CLAIM_STATUSES = (CLAIM_CLAIMED, CLAIM_IN_PROGRESS)


class ClaimArbitrator:

    def __init__(self, store, dispatcher, use_procedure=True):
        self.store = store
        self.dispatcher = dispatcher
        self.use_procedure = use_procedure

    # ==========================================
    #  CLAIM
    # ==========================================
    def claim(self, listing_id, ngo_id, pickup_time=None, notes=None):
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise NotFound('Listing not found')

        ngo = self.store.get_ngo(ngo_id)
        if ngo is None:
            raise NotFound('NGO profile not found')

        if listing.status in (COMPLETED, EXPIRED):
            raise InvalidState('Listing is not available for claiming', current_status=listing.status)
        if not is_claimable(listing):
            raise InvalidState('Listing already claimed by another NGO', current_status=listing.status)

        claim = None
        if self.use_procedure:
            try:
                claim = self.store.claim_listing_procedure(listing_id, ngo_id, pickup_time, notes)
            except ProcedureUnavailable as e:
                logger.warning("Atomic claim unavailable for listing %s, using fallback: %s", listing_id, e)
                listing = self.store.get_listing(listing_id)
                if listing is None or not is_claimable(listing):
                    raise InvalidState('Listing already claimed by another NGO',
                                       current_status=listing.status if listing else None)

        if claim is None:
            claim = self._claim_with_fallback(listing_id, ngo_id, pickup_time, notes)

        logger.info("Listing %s claimed by NGO %s (claim %s)", listing_id, ngo_id, claim.claim_id)
        self._notify_claimed(listing_id, ngo)
        return claim

    def _claim_with_fallback(self, listing_id, ngo_id, pickup_time, notes):
        # Not safe against a concurrent claim on the same listing.
        self.store.delete_claims_for_listing(listing_id)
        self.store.set_listing_lock(listing_id, locked=True)
        try:
            return self.store.insert_claim(listing_id, ngo_id, pickup_time, notes)
        except Unavailable:
            logger.error("Claim insert failed for listing %s, re-opening it", listing_id)
            try:
                self.store.set_listing_lock(listing_id, locked=False)
            except Unavailable:
                logger.critical("Listing %s is locked with no claim; rollback failed", listing_id)
            raise

    def _notify_claimed(self, listing_id, ngo):
        # Runs after the claim is committed; nothing here may fail the claim.
        try:
            listing = self.store.get_listing(listing_id)
            donor_profile = listing.donor.profile
            payload = {'food_type': listing.food_type, 'ngo_name': ngo.ngo_name, 'listing_id': listing_id}
            self.dispatcher.dispatch(CLAIM_ACCEPTED, [recipient_for(donor_profile)], payload,
                                     channels=('push', 'email'))
            if ngo.profile is not None:
                self.dispatcher.dispatch(CLAIM_ACCEPTED, [recipient_for(ngo.profile)], payload,
                                         channels=('email',))
        except Exception:
            logger.exception("Could not schedule claim notifications for listing %s", listing_id)

    # ==========================================
    #  UPDATE / CANCEL
    # ==========================================
    def _owned_claim(self, claim_id, ngo_id):
        claim = self.store.get_claim(claim_id)
        if claim is None or claim.ngo_id != ngo_id:
            raise NotFound('Claim not found or access denied')
        return claim

    def update_claim(self, claim_id, ngo_id, update):
        claim = self._owned_claim(claim_id, ngo_id)
        changes = update.present()
        if 'status' in changes and changes['status'] not in NGO_SETTABLE_CLAIM_STATUSES:
            raise InvalidState('Claim status cannot be set directly', current_status=claim.status)
        if claim.status in (CLAIM_CANCELLED, CLAIM_COMPLETED):
            raise InvalidState('Claim can no longer be updated', current_status=claim.status)
        update.apply(claim)
        return self.store.save(claim)

    def cancel_claim(self, claim_id, ngo_id):
        """
        Cancel a claim and re-open its listing.

        Forbidden once a delivery references the claim. Delete and unlock
        are two separate steps; if the unlock fails the listing stays
        locked and the error is reported.
        """
        claim = self._owned_claim(claim_id, ngo_id)
        if self.store.get_delivery_for_claim(claim_id) is not None:
            raise Forbidden('Cannot cancel claim after delivery has been assigned')

        listing_id = claim.listing_id
        self.store.delete_claim(claim_id)
        try:
            self.store.set_listing_lock(listing_id, locked=False)
        except Unavailable:
            logger.critical("Claim %s deleted but listing %s is still locked", claim_id, listing_id)
            raise
        logger.info("Claim %s cancelled by NGO %s, listing %s re-opened", claim_id, ngo_id, listing_id)
