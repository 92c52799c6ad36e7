import logging
from decimal import Decimal, InvalidOperation

from errors import NotFound
from models import OPEN, FoodListing, utcnow
from services.lifecycle import ensure_listing_mutable
from services.matching import match_ngos_for_listing
from services.notifications import LISTING_CREATED, recipient_for

logger = logging.getLogger(__name__)


def validate_food_type(value):
    if not isinstance(value, str) or not value.strip():
        raise ValueError('food_type is required')
    if len(value.strip()) > 80:
        raise ValueError('food_type must be at most 80 characters')
    return value.strip()


def validate_quantity(value):
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError('quantity_kg must be a number')
    if quantity < 0:
        raise ValueError('quantity_kg must not be negative')
    return quantity


def validate_meals(value):
    try:
        meals = int(value)
    except (TypeError, ValueError):
        raise ValueError('meal_equivalent must be an integer')
    if meals < 0:
        raise ValueError('meal_equivalent must not be negative')
    return meals


def validate_expiry(expiry_time, now=None):
    if expiry_time is None:
        raise ValueError('expiry_time is required')
    if expiry_time <= (now or utcnow()):
        raise ValueError('expiry_time must be in the future')
    return expiry_time


class ListingService:

    def __init__(self, store, dispatcher):
        self.store = store
        self.dispatcher = dispatcher

    def create_listing(self, donor, food_type, quantity_kg, meal_equivalent, expiry_time,
                       pickup_address=None, latitude=None, longitude=None):
        listing = FoodListing(
            donor_id=donor.donor_id,
            food_type=validate_food_type(food_type),
            quantity_kg=validate_quantity(quantity_kg),
            meal_equivalent=validate_meals(meal_equivalent),
            expiry_time=validate_expiry(expiry_time),
            pickup_address=pickup_address,
            latitude=latitude,
            longitude=longitude,
            status=OPEN,
            is_locked=False,
        )
        self.store.save(listing)
        logger.info("Donor %s posted listing %s (%s kg %s)",
                    donor.donor_id, listing.listing_id, listing.quantity_kg, listing.food_type)
        self.notify_nearby_ngos(listing.listing_id)
        return listing

    def notify_nearby_ngos(self, listing_id):
        """Queue a listing_created alert for every NGO whose radius covers it."""
        try:
            matches = match_ngos_for_listing(self.store, listing_id)
            if not matches:
                logger.info("No NGOs within service radius of listing %s", listing_id)
                return 0

            listing = self.store.get_listing(listing_id)
            recipients = []
            for match in matches:
                ngo = self.store.get_ngo(match.ngo_id)
                if ngo is None or ngo.profile is None:
                    continue
                recipients.append(recipient_for(ngo.profile, distance_km=match.distance_km))

            payload = {
                'listing_id': listing_id,
                'food_type': listing.food_type,
                'quantity_kg': float(listing.quantity_kg),
            }
            self.dispatcher.dispatch(LISTING_CREATED, recipients, payload)
            return len(recipients)
        except Exception:
            # The listing is already saved; failing to alert must not undo that.
            logger.exception("Failed to notify NGOs about listing %s", listing_id)
            return 0

    def _owned_listing(self, listing_id, donor):
        listing = self.store.get_listing(listing_id)
        if listing is None or listing.donor_id != donor.donor_id:
            raise NotFound('Listing not found or access denied')
        return listing

    def update_listing(self, listing_id, donor, update):
        listing = self._owned_listing(listing_id, donor)
        ensure_listing_mutable(listing, 'update')

        changes = update.present()
        if 'food_type' in changes:
            update.food_type = validate_food_type(changes['food_type'])
        if 'quantity_kg' in changes:
            update.quantity_kg = validate_quantity(changes['quantity_kg'])
        if 'meal_equivalent' in changes:
            update.meal_equivalent = validate_meals(changes['meal_equivalent'])
        if 'expiry_time' in changes:
            update.expiry_time = validate_expiry(changes['expiry_time'])

        update.apply(listing)
        return self.store.save(listing)

    def delete_listing(self, listing_id, donor):
        listing = self._owned_listing(listing_id, donor)
        ensure_listing_mutable(listing, 'delete')
        self.store.delete(listing)
        logger.info("Donor %s deleted listing %s", donor.donor_id, listing_id)


def ngo_for_profile(store, profile_id):
    ngo = store.get_ngo_by_profile(profile_id)
    if ngo is None:
        raise NotFound('NGO profile not found', hint='Please create an NGO profile first')
    return ngo


def donor_for_profile(store, profile_id):
    donor = store.get_donor_by_profile(profile_id)
    if donor is None:
        raise NotFound('Donor profile not found', hint='Please create a donor profile first')
    return donor
