"""
Relational store used by the claim, matching and delivery services.

The services never touch `db.session` directly; they receive a store at
construction time (see `create_app`). `SQLAlchemyStore` is the real one.
Every call is a single round trip that either commits or is rolled back
and reported as `Unavailable`.
"""
import logging
from contextlib import contextmanager

from psycopg2 import errorcodes
from sqlalchemy import delete, exists, func, select, text, update
from sqlalchemy.exc import IntegrityError, ProgrammingError, SQLAlchemyError

from errors import Conflict, InvalidState, ProcedureUnavailable, Unavailable
from models import (
    CLAIM_CANCELLED, CLAIM_CLAIMED, CLAIMABLE_STATUSES, EXPIRED, NGO, Delivery,
    Donor, FoodListing, NGOClaim, Volunteer, utcnow,
)
from services.lifecycle import lock_fields

logger = logging.getLogger(__name__)


# Installed on PostgreSQL by deploy.py. Returns the new claim id, or NULL
# when the listing is already locked or not in a claimable status. The
# guarded UPDATE takes the row lock first, so concurrent callers queue on it
# and every caller after the winner sees is_locked = TRUE.
CLAIM_LISTING_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION claim_listing(
    p_listing_id INTEGER,
    p_ngo_id INTEGER,
    p_pickup_time TIMESTAMP DEFAULT NULL,
    p_notes TEXT DEFAULT NULL
) RETURNS INTEGER
LANGUAGE plpgsql AS $$
DECLARE
    v_claim_id INTEGER;
BEGIN
    UPDATE food_listings
       SET is_locked = TRUE, status = 'claimed', updated_at = timezone('utc', now())
     WHERE listing_id = p_listing_id
       AND is_locked = FALSE
       AND status IN ('open', 'in_discussion');

    IF NOT FOUND THEN
        RETURN NULL;
    END IF;

    DELETE FROM ngo_claims
     WHERE listing_id = p_listing_id AND status <> 'cancelled';

    INSERT INTO ngo_claims (listing_id, ngo_id, pickup_scheduled_time, strategy_notes, status, acceptance_time)
    VALUES (p_listing_id, p_ngo_id, p_pickup_time, p_notes, 'claimed', timezone('utc', now()))
    RETURNING claim_id INTO v_claim_id;

    RETURN v_claim_id;
END;
$$;
"""


def _procedure_missing(error):
    """True when the database reports that claim_listing() does not exist."""
    if not isinstance(error, ProgrammingError):
        return False
    return getattr(error.orig, 'pgcode', None) == errorcodes.UNDEFINED_FUNCTION


class SQLAlchemyStore:

    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    @contextmanager
    def _call(self, action):
        try:
            yield self.session
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Store call '%s' failed: %s", action, e)
            raise Unavailable(f'Store unavailable during {action}') from e

    # --- READS ---
    # populate_existing so lifecycle checks always see the freshest row

    def get_listing(self, listing_id):
        with self._call('get_listing') as session:
            return session.get(FoodListing, listing_id, populate_existing=True)

    def get_ngo(self, ngo_id):
        with self._call('get_ngo') as session:
            return session.get(NGO, ngo_id, populate_existing=True)

    def get_ngo_by_profile(self, profile_id):
        with self._call('get_ngo_by_profile') as session:
            return session.execute(select(NGO).filter_by(profile_id=profile_id)).scalar_one_or_none()

    def get_donor_by_profile(self, profile_id):
        with self._call('get_donor_by_profile') as session:
            return session.execute(select(Donor).filter_by(profile_id=profile_id)).scalar_one_or_none()

    def get_claim(self, claim_id):
        with self._call('get_claim') as session:
            return session.get(NGOClaim, claim_id, populate_existing=True)

    def get_delivery(self, delivery_id):
        with self._call('get_delivery') as session:
            return session.get(Delivery, delivery_id, populate_existing=True)

    def get_delivery_for_claim(self, claim_id):
        with self._call('get_delivery_for_claim') as session:
            return session.execute(select(Delivery).filter_by(claim_id=claim_id)).scalar_one_or_none()

    def get_volunteer(self, volunteer_id):
        with self._call('get_volunteer') as session:
            return session.get(Volunteer, volunteer_id)

    def list_ngos(self):
        with self._call('list_ngos') as session:
            return session.execute(select(NGO).order_by(NGO.ngo_id)).scalars().all()

    def list_open_listings(self, now):
        return self.search_listings(now)

    def search_listings(self, now, status=None, city=None):
        """
        Public feed. Without a status this is the open feed; with one, every
        listing in that status. `city` matches the donor's city.
        """
        with self._call('search_listings') as session:
            query = select(FoodListing)
            if status:
                query = query.where(FoodListing.status == status)
            else:
                query = query.where(
                    FoodListing.status.in_(CLAIMABLE_STATUSES),
                    FoodListing.is_locked.is_(False),
                    FoodListing.expiry_time > now,
                )
            if city:
                query = query.join(Donor, Donor.donor_id == FoodListing.donor_id).where(Donor.city == city)
            query = query.order_by(FoodListing.created_at.desc(), FoodListing.listing_id.desc())
            return session.execute(query).scalars().all()

    def list_listings_for_donor(self, donor_id):
        with self._call('list_listings_for_donor') as session:
            query = (
                select(FoodListing)
                .filter_by(donor_id=donor_id)
                .order_by(FoodListing.created_at.desc())
            )
            return session.execute(query).scalars().all()

    def list_claims_for_ngo(self, ngo_id, status=None):
        with self._call('list_claims_for_ngo') as session:
            query = select(NGOClaim).filter_by(ngo_id=ngo_id)
            if status:
                query = query.filter_by(status=status)
            query = query.order_by(NGOClaim.acceptance_time.desc())
            return session.execute(query).scalars().all()

    def list_deliveries_for_ngo(self, ngo_id, status=None):
        with self._call('list_deliveries_for_ngo') as session:
            query = select(Delivery).join(NGOClaim).where(NGOClaim.ngo_id == ngo_id)
            if status:
                query = query.where(Delivery.delivery_status == status)
            query = query.order_by(Delivery.created_at.desc())
            return session.execute(query).scalars().all()

    def list_available_volunteers(self, ngo_id):
        with self._call('list_available_volunteers') as session:
            query = select(Volunteer).filter_by(ngo_id=ngo_id, is_available=True)
            return session.execute(query).scalars().all()

    def active_claim_count(self, listing_id):
        with self._call('active_claim_count') as session:
            return session.execute(
                select(func.count(NGOClaim.claim_id)).where(
                    NGOClaim.listing_id == listing_id,
                    NGOClaim.status != CLAIM_CANCELLED,
                )
            ).scalar()

    def find_stuck_listings(self):
        """Locked listings without any non-cancelled claim."""
        with self._call('find_stuck_listings') as session:
            has_claim = exists().where(
                NGOClaim.listing_id == FoodListing.listing_id,
                NGOClaim.status != CLAIM_CANCELLED,
            )
            query = select(FoodListing.listing_id).where(FoodListing.is_locked.is_(True), ~has_claim)
            return session.execute(query).scalars().all()

    # --- ATOMIC CLAIM PROCEDURE ---

    def claim_listing_procedure(self, listing_id, ngo_id, pickup_time=None, notes=None):
        """
        Lock the listing and create the claim in one transaction.

        Raises InvalidState when the listing is no longer claimable,
        ProcedureUnavailable when the function is not installed, and
        Unavailable for any other store failure (timeouts, lock errors).
        Only ProcedureUnavailable allows the caller to fall back.
        """
        session = self.session
        try:
            if session.get_bind().dialect.name == 'postgresql':
                claim_id = session.execute(
                    text('SELECT claim_listing(:listing_id, :ngo_id, '
                         'CAST(:pickup_time AS TIMESTAMP), CAST(:notes AS TEXT))'),
                    {'listing_id': listing_id, 'ngo_id': ngo_id,
                     'pickup_time': pickup_time, 'notes': notes},
                ).scalar()
                session.commit()
            else:
                claim_id = self._claim_in_transaction(listing_id, ngo_id, pickup_time, notes)
        except SQLAlchemyError as e:
            session.rollback()
            if _procedure_missing(e):
                logger.warning("claim_listing procedure is not installed: %s", e)
                raise ProcedureUnavailable('Atomic claim procedure unavailable') from e
            logger.error("claim_listing procedure failed for listing %s: %s", listing_id, e)
            raise Unavailable('Store unavailable during claim_listing') from e

        if claim_id is None:
            listing = self.get_listing(listing_id)
            raise InvalidState(
                'Listing already claimed by another NGO',
                current_status=listing.status if listing else None,
            )
        return self.get_claim(claim_id)

    def _claim_in_transaction(self, listing_id, ngo_id, pickup_time, notes):
        # Same statements as the plpgsql function, on the current connection.
        session = self.session
        locked = session.execute(
            update(FoodListing)
            .where(
                FoodListing.listing_id == listing_id,
                FoodListing.is_locked.is_(False),
                FoodListing.status.in_(CLAIMABLE_STATUSES),
            )
            .values(updated_at=utcnow(), **lock_fields(True))
            .execution_options(synchronize_session=False)
        )
        if locked.rowcount != 1:
            session.rollback()
            return None

        session.execute(
            delete(NGOClaim)
            .where(NGOClaim.listing_id == listing_id, NGOClaim.status != CLAIM_CANCELLED)
            .execution_options(synchronize_session=False)
        )
        claim = NGOClaim(
            listing_id=listing_id,
            ngo_id=ngo_id,
            pickup_scheduled_time=pickup_time,
            strategy_notes=notes,
            status=CLAIM_CLAIMED,
        )
        session.add(claim)
        session.flush()
        claim_id = claim.claim_id
        session.commit()
        return claim_id

    # --- SINGLE-STATEMENT OPERATIONS (fallback path) ---

    def delete_claims_for_listing(self, listing_id):
        with self._call('delete_claims_for_listing') as session:
            result = session.execute(
                delete(NGOClaim)
                .where(NGOClaim.listing_id == listing_id, NGOClaim.status != CLAIM_CANCELLED)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    def set_listing_lock(self, listing_id, locked):
        with self._call('set_listing_lock') as session:
            session.execute(
                update(FoodListing)
                .where(FoodListing.listing_id == listing_id)
                .values(updated_at=utcnow(), **lock_fields(locked))
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def insert_claim(self, listing_id, ngo_id, pickup_time=None, notes=None):
        with self._call('insert_claim') as session:
            claim = NGOClaim(
                listing_id=listing_id,
                ngo_id=ngo_id,
                pickup_scheduled_time=pickup_time,
                strategy_notes=notes,
                status=CLAIM_CLAIMED,
            )
            session.add(claim)
            session.commit()
            return claim

    def delete_claim(self, claim_id):
        with self._call('delete_claim') as session:
            claim = session.get(NGOClaim, claim_id)
            if claim is not None:
                session.delete(claim)
            session.commit()

    def insert_delivery(self, claim_id, volunteer_id=None):
        try:
            with self._call('insert_delivery') as session:
                delivery = Delivery(claim_id=claim_id, volunteer_id=volunteer_id, delivery_status='assigned')
                session.add(delivery)
                session.commit()
                return delivery
        except Unavailable as e:
            # Lost the race against another assignment for the same claim
            if isinstance(e.__cause__, IntegrityError):
                raise Conflict('Delivery already assigned for this claim') from e.__cause__
            raise

    def expire_listings(self, now):
        with self._call('expire_listings') as session:
            result = session.execute(
                update(FoodListing)
                .where(
                    FoodListing.status.in_(CLAIMABLE_STATUSES),
                    FoodListing.is_locked.is_(False),
                    FoodListing.expiry_time <= now,
                )
                .values(status=EXPIRED, is_locked=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    # --- GENERIC WRITES ---

    def save(self, *objects):
        with self._call('save') as session:
            for obj in objects:
                session.add(obj)
            session.commit()
            return objects[0] if len(objects) == 1 else objects

    def delete(self, obj):
        with self._call('delete') as session:
            session.delete(obj)
            session.commit()
