import sys
import os
from datetime import timedelta
from decimal import Decimal

import pytest

# 1. Add the parent directory to Python's path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# 2. NOW import from app
from app import create_app
from extensions import db, dispatcher
from flask_jwt_extended import create_access_token
from models import NGO, Donor, FoodListing, Profile, Volunteer, utcnow

# Lagos mainland; offsets below are in degrees of longitude on this parallel
BASE_LAT = 6.5244
BASE_LON = 3.3792


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "JWT_SECRET_KEY": "test-secret",
        "MAIL_DEFAULT_SENDER": "alerts@foodrescue.test",
        "NOTIFICATIONS_ASYNC": False,
        "CLAIM_PROCEDURE_ENABLED": True,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions['food_store']


@pytest.fixture
def arbitrator(app):
    return app.extensions['claim_arbitrator']


@pytest.fixture
def notifications(app):
    """The app's dispatcher; tests call drain() to run what was queued."""
    return dispatcher


# ==========================================
#  FACTORIES
# ==========================================

@pytest.fixture
def make_donor(app):
    def _make(email='donor@test.com', name='Pro Kitchen', city='Lagos'):
        profile = Profile(email=email, phone='+2348000000001', full_name='Ada Donor',
                          organization_name=name, role='donor')
        donor = Donor(profile=profile, city=city)
        db.session.add_all([profile, donor])
        db.session.commit()
        return donor
    return _make


@pytest.fixture
def make_ngo(app):
    def _make(email='ngo@test.com', name='Feed Lagos', latitude=BASE_LAT, longitude=BASE_LON,
              service_radius_km=10.0):
        profile = Profile(email=email, phone='+2348000000002', full_name='Bola Ngo',
                          organization_name=name, role='ngo')
        ngo = NGO(profile=profile, ngo_name=name, city='Lagos', latitude=latitude,
                  longitude=longitude, service_radius_km=service_radius_km)
        db.session.add_all([profile, ngo])
        db.session.commit()
        return ngo
    return _make


@pytest.fixture
def make_listing(app):
    def _make(donor, latitude=BASE_LAT, longitude=BASE_LON, quantity_kg='10.00', meals=25,
              expires_in=timedelta(days=1), status='open', is_locked=False, created_at=None):
        listing = FoodListing(
            donor_id=donor.donor_id,
            food_type='Jollof rice',
            quantity_kg=Decimal(quantity_kg),
            meal_equivalent=meals,
            pickup_address='12 Marina Road',
            latitude=latitude,
            longitude=longitude,
            expiry_time=utcnow() + expires_in,
            status=status,
            is_locked=is_locked,
        )
        if created_at is not None:
            listing.created_at = created_at
        db.session.add(listing)
        db.session.commit()
        return listing
    return _make


@pytest.fixture
def make_volunteer(app):
    def _make(ngo, name='Chidi Rider', latitude=BASE_LAT, longitude=BASE_LON, is_available=True):
        volunteer = Volunteer(ngo_id=ngo.ngo_id, full_name=name, phone='+2348000000003',
                              vehicle_type='motorbike', latitude=latitude, longitude=longitude,
                              is_available=is_available)
        db.session.add(volunteer)
        db.session.commit()
        return volunteer
    return _make


@pytest.fixture
def donor(make_donor):
    return make_donor()


@pytest.fixture
def ngo(make_ngo):
    return make_ngo()


@pytest.fixture
def listing(make_listing, donor):
    return make_listing(donor)


def auth_headers(profile):
    token = create_access_token(identity=str(profile.id), additional_claims={'role': profile.role})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def donor_headers(donor):
    return auth_headers(donor.profile)


@pytest.fixture
def ngo_headers(ngo):
    return auth_headers(ngo.profile)


@pytest.fixture
def headers_for(app):
    return auth_headers
