from datetime import datetime, timezone
from extensions import db


def utcnow():
    """Naive UTC, the way timestamps are stored and compared everywhere."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Listing statuses
OPEN = 'open'
IN_DISCUSSION = 'in_discussion'
CLAIMED = 'claimed'
COMPLETED = 'completed'
EXPIRED = 'expired'

LISTING_STATUSES = (OPEN, IN_DISCUSSION, CLAIMED, COMPLETED, EXPIRED)
CLAIMABLE_STATUSES = (OPEN, IN_DISCUSSION)
LOCKED_STATUSES = (CLAIMED, COMPLETED)

# Claim statuses
CLAIM_CLAIMED = 'claimed'
CLAIM_IN_PROGRESS = 'in_progress'
CLAIM_COMPLETED = 'completed'
CLAIM_CANCELLED = 'cancelled'

# Delivery statuses
DELIVERY_STATUSES = ('assigned', 'in_transit', 'delivered', 'failed')


def _iso(value):
    return value.isoformat() if value else None


# ==========================================
#  1. PROFILE MODEL
# ==========================================
class Profile(db.Model):
    """
    The account behind a bearer token. The token identity is `Profile.id`
    and the token carries the role (donor, ngo, admin) as a claim.
    """
    __tablename__ = 'profiles'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    full_name = db.Column(db.String(120), nullable=True)
    organization_name = db.Column(db.String(150), nullable=True)
    role = db.Column(db.String(20), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)


# ==========================================
#  2. DONOR & NGO MODELS
# ==========================================
class Donor(db.Model):
    __tablename__ = 'donors'

    donor_id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), unique=True, nullable=False)
    city = db.Column(db.String(80))

    profile = db.relationship('Profile', backref=db.backref('donor', uselist=False))
    listings = db.relationship('FoodListing', backref='donor', lazy=True)


class NGO(db.Model):
    __tablename__ = 'ngos'

    ngo_id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), unique=True, nullable=False)
    ngo_name = db.Column(db.String(150), nullable=False)
    address = db.Column(db.String(255))
    city = db.Column(db.String(80))
    contact_person = db.Column(db.String(120))

    # --- COVERAGE AREA ---
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    service_radius_km = db.Column(db.Float, nullable=False, default=10.0)

    profile = db.relationship('Profile', backref=db.backref('ngo', uselist=False))
    claims = db.relationship('NGOClaim', backref='ngo', lazy=True)
    volunteers = db.relationship('Volunteer', backref='ngo', lazy=True)


# ==========================================
#  3. FOOD LISTING MODEL
# ==========================================
class FoodListing(db.Model):
    __tablename__ = 'food_listings'

    listing_id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey('donors.donor_id'), nullable=False)

    food_type = db.Column(db.String(80), nullable=False)
    quantity_kg = db.Column(db.Numeric(10, 2), nullable=False)
    meal_equivalent = db.Column(db.Integer, nullable=False, default=0)
    pickup_address = db.Column(db.String(255))
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    expiry_time = db.Column(db.DateTime, nullable=False)

    # status and is_locked are only ever written together (see services.lifecycle)
    status = db.Column(db.String(20), nullable=False, default=OPEN, index=True)
    is_locked = db.Column(db.Boolean, nullable=False, default=False)

    # --- TIMESTAMPS ---
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    claims = db.relationship('NGOClaim', backref='listing', lazy=True)

    def to_dict(self):
        return {
            'listing_id': self.listing_id,
            'donor_id': self.donor_id,
            'food_type': self.food_type,
            'quantity_kg': float(self.quantity_kg) if self.quantity_kg is not None else None,
            'meal_equivalent': self.meal_equivalent,
            'pickup_address': self.pickup_address,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'expiry_time': _iso(self.expiry_time),
            'status': self.status,
            'is_locked': self.is_locked,
            'created_at': _iso(self.created_at),
        }


# ==========================================
#  4. CLAIM MODEL
# ==========================================
class NGOClaim(db.Model):
    __tablename__ = 'ngo_claims'

    claim_id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey('food_listings.listing_id'), nullable=False, index=True)
    ngo_id = db.Column(db.Integer, db.ForeignKey('ngos.ngo_id'), nullable=False)

    pickup_scheduled_time = db.Column(db.DateTime, nullable=True)
    strategy_notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=CLAIM_CLAIMED)

    acceptance_time = db.Column(db.DateTime, default=utcnow)

    delivery = db.relationship('Delivery', backref='claim', uselist=False)

    def to_dict(self):
        return {
            'claim_id': self.claim_id,
            'listing_id': self.listing_id,
            'ngo_id': self.ngo_id,
            'pickup_scheduled_time': _iso(self.pickup_scheduled_time),
            'strategy_notes': self.strategy_notes,
            'status': self.status,
            'acceptance_time': _iso(self.acceptance_time),
        }


# ==========================================
#  5. VOLUNTEER & DELIVERY MODELS
# ==========================================
class Volunteer(db.Model):
    __tablename__ = 'volunteers'

    volunteer_id = db.Column(db.Integer, primary_key=True)
    ngo_id = db.Column(db.Integer, db.ForeignKey('ngos.ngo_id'), nullable=False)
    full_name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20))
    vehicle_type = db.Column(db.String(40))
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_available = db.Column(db.Boolean, default=True)


class Delivery(db.Model):
    __tablename__ = 'deliveries'

    delivery_id = db.Column(db.Integer, primary_key=True)
    # One delivery per claim, enforced by the database as well
    claim_id = db.Column(db.Integer, db.ForeignKey('ngo_claims.claim_id'), unique=True, nullable=False)
    volunteer_id = db.Column(db.Integer, db.ForeignKey('volunteers.volunteer_id'), nullable=True)

    delivery_status = db.Column(db.String(20), nullable=False, default='assigned')
    pickup_time = db.Column(db.DateTime, nullable=True)
    delivery_time = db.Column(db.DateTime, nullable=True)
    proof_image_url = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    volunteer = db.relationship('Volunteer', backref='deliveries')

    def to_dict(self):
        return {
            'delivery_id': self.delivery_id,
            'claim_id': self.claim_id,
            'volunteer_id': self.volunteer_id,
            'delivery_status': self.delivery_status,
            'pickup_time': _iso(self.pickup_time),
            'delivery_time': _iso(self.delivery_time),
            'proof_image_url': self.proof_image_url,
            'created_at': _iso(self.created_at),
        }


# ==========================================
#  6. IMPACT & NOTIFICATION LOGS
# ==========================================
class ImpactMetric(db.Model):
    __tablename__ = 'impact_metrics'

    metric_id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey('food_listings.listing_id'), nullable=False)
    delivery_id = db.Column(db.Integer, db.ForeignKey('deliveries.delivery_id'), unique=True, nullable=False)
    meals_served = db.Column(db.Integer, default=0)
    food_saved_kg = db.Column(db.Numeric(10, 2), default=0)
    co2_reduced_kg = db.Column(db.Numeric(10, 2), default=0)
    created_at = db.Column(db.DateTime, default=utcnow)


class NotificationLog(db.Model):
    __tablename__ = 'notification_logs'

    notification_id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profiles.id'), nullable=True)
    recipient = db.Column(db.String(120))  # phone or email, whichever the channel used
    channel = db.Column(db.String(20), nullable=False)
    message_type = db.Column(db.String(40), nullable=False)
    message_body = db.Column(db.Text, nullable=False)
    delivery_status = db.Column(db.String(20), default='pending')  # pending, sent, failed
    error_message = db.Column(db.String(255))
    sent_at = db.Column(db.DateTime, default=utcnow)
    delivered_at = db.Column(db.DateTime, nullable=True)
