import logging
from decimal import Decimal

from errors import Conflict, NotFound
from models import (
    CLAIM_COMPLETED, CLAIM_IN_PROGRESS, COMPLETED, DELIVERY_STATUSES, ImpactMetric, utcnow,
)
from services.lifecycle import apply_status
from services.notifications import DELIVERY_ASSIGNED, DELIVERY_COMPLETED, recipient_for

logger = logging.getLogger(__name__)

DEFAULT_CO2_PER_KG = Decimal('2.5')


class DeliveryService:

    def __init__(self, store, dispatcher, co2_per_kg=DEFAULT_CO2_PER_KG):
        self.store = store
        self.dispatcher = dispatcher
        self.co2_per_kg = Decimal(str(co2_per_kg))

    def _owned_claim(self, claim_id, ngo):
        claim = self.store.get_claim(claim_id)
        if claim is None or claim.ngo_id != ngo.ngo_id:
            raise NotFound('Claim not found or access denied')
        return claim

    def _owned_volunteer(self, volunteer_id, ngo):
        volunteer = self.store.get_volunteer(volunteer_id)
        if volunteer is None or volunteer.ngo_id != ngo.ngo_id:
            raise NotFound('Volunteer not found or does not belong to your NGO')
        return volunteer

    def owned_delivery(self, delivery_id, ngo):
        delivery = self.store.get_delivery(delivery_id)
        if delivery is None or delivery.claim.ngo_id != ngo.ngo_id:
            raise NotFound('Delivery not found or access denied')
        return delivery

    def assign(self, claim_id, ngo, volunteer_id=None):
        """Create the one delivery a claim may have."""
        self._owned_claim(claim_id, ngo)
        if self.store.get_delivery_for_claim(claim_id) is not None:
            raise Conflict('Delivery already assigned for this claim')

        volunteer = self._owned_volunteer(volunteer_id, ngo) if volunteer_id else None
        delivery = self.store.insert_delivery(claim_id, volunteer_id)
        logger.info("Delivery %s assigned for claim %s", delivery.delivery_id, claim_id)

        if volunteer is not None:
            self._notify_assigned(ngo, volunteer)
        return delivery

    def reassign(self, delivery_id, ngo, volunteer_id):
        delivery = self.owned_delivery(delivery_id, ngo)
        volunteer = self._owned_volunteer(volunteer_id, ngo)
        delivery.volunteer_id = volunteer.volunteer_id
        self.store.save(delivery)
        self._notify_assigned(ngo, volunteer)
        return delivery

    def update_status(self, delivery_id, ngo, status, pickup_time=None, delivery_time=None,
                      proof_image_url=None):
        """
        Move a delivery along and cascade to its claim and listing.

        in_transit marks the claim in progress; delivered completes the
        claim and the listing and records the impact.
        """
        if status not in DELIVERY_STATUSES:
            raise ValueError('Invalid status')

        delivery = self.owned_delivery(delivery_id, ngo)
        already_delivered = delivery.delivery_status == 'delivered'
        delivery.delivery_status = status
        if pickup_time:
            delivery.pickup_time = pickup_time
        if delivery_time:
            delivery.delivery_time = delivery_time
        if proof_image_url:
            delivery.proof_image_url = proof_image_url

        if status == 'in_transit' and not delivery.pickup_time:
            delivery.pickup_time = utcnow()
        if status == 'delivered' and not delivery.delivery_time:
            delivery.delivery_time = utcnow()

        claim = delivery.claim
        listing = claim.listing
        changed = [delivery]
        metric = None

        if status == 'in_transit':
            claim.status = CLAIM_IN_PROGRESS
            changed.append(claim)
        elif status == 'delivered' and not already_delivered:
            claim.status = CLAIM_COMPLETED
            apply_status(listing, COMPLETED)
            metric = ImpactMetric(
                listing_id=listing.listing_id,
                delivery_id=delivery.delivery_id,
                meals_served=listing.meal_equivalent,
                food_saved_kg=listing.quantity_kg,
                co2_reduced_kg=Decimal(listing.quantity_kg) * self.co2_per_kg,
            )
            changed.extend([claim, listing, metric])

        self.store.save(*changed)

        if metric is not None:
            self._notify_completed(ngo, listing, metric)
        return delivery

    def _notify_assigned(self, ngo, volunteer):
        if ngo.profile is None:
            return
        self.dispatcher.dispatch(DELIVERY_ASSIGNED, [recipient_for(ngo.profile)],
                                 {'volunteer_name': volunteer.full_name})

    def _notify_completed(self, ngo, listing, metric):
        recipients = []
        if ngo.profile is not None:
            recipients.append(recipient_for(ngo.profile))
        if listing.donor is not None and listing.donor.profile is not None:
            recipients.append(recipient_for(listing.donor.profile))
        self.dispatcher.dispatch(DELIVERY_COMPLETED, recipients, {
            'listing_id': listing.listing_id,
            'meals_served': metric.meals_served,
            'co2_reduced_kg': float(metric.co2_reduced_kg),
        })
