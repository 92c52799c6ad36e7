from datetime import timedelta
from decimal import Decimal

import pytest

from errors import Forbidden, NotFound
from extensions import db
from models import FoodListing, NotificationLog, utcnow
from services.lifecycle import can_mutate_listing, is_coherent
from services.updates import ListingUpdate


@pytest.fixture
def listings(app):
    return app.extensions['listing_service']


# ==========================================
#  LIFECYCLE GUARD
# ==========================================

@pytest.mark.parametrize('status, is_locked, allowed', [
    ('open', False, True),
    ('in_discussion', False, True),
    ('open', True, False),
    ('claimed', True, False),
    ('completed', True, False),
    ('expired', False, False),
])
def test_can_mutate_listing(make_listing, donor, status, is_locked, allowed):
    listing = make_listing(donor, status=status, is_locked=is_locked)
    assert can_mutate_listing(listing) is allowed


# ==========================================
#  SERVICE
# ==========================================

def test_create_listing_is_open_and_unlocked(listings, donor):
    listing = listings.create_listing(donor, 'Bread', '12.5', 30, utcnow() + timedelta(hours=6),
                                      pickup_address='Allen Avenue', latitude=6.6, longitude=3.35)

    assert listing.listing_id is not None
    assert listing.status == 'open'
    assert listing.is_locked is False
    assert listing.quantity_kg == Decimal('12.50')
    assert is_coherent(listing)


@pytest.mark.parametrize('quantity, meals, expires_in', [
    ('-1', 10, timedelta(hours=1)),
    ('ten', 10, timedelta(hours=1)),
    ('5', -3, timedelta(hours=1)),
    ('5', 10, timedelta(hours=-1)),
])
def test_create_listing_rejects_bad_values(listings, donor, quantity, meals, expires_in):
    with pytest.raises(ValueError):
        listings.create_listing(donor, 'Bread', quantity, meals, utcnow() + expires_in)
    assert FoodListing.query.count() == 0


def test_create_listing_alerts_ngos_in_range(listings, donor, make_ngo, notifications):
    near = make_ngo(email='near@test.com', latitude=0, longitude=0.05)
    make_ngo(email='far@test.com', latitude=0, longitude=1.0)

    listings.create_listing(donor, 'Bread', '8', 20, utcnow() + timedelta(hours=6),
                            latitude=0, longitude=0)

    reports = notifications.drain()
    assert len(reports) == 1
    assert reports[0].event == 'listing_created'
    assert reports[0].total == 1
    assert reports[0].successful == 1
    assert NotificationLog.query.one().profile_id == near.profile_id


def test_partial_update_touches_only_given_fields(listings, listing, donor):
    original_address = listing.pickup_address

    updated = listings.update_listing(listing.listing_id, donor,
                                      ListingUpdate(food_type='Rice and stew', meal_equivalent=40))

    assert updated.food_type == 'Rice and stew'
    assert updated.meal_equivalent == 40
    assert updated.pickup_address == original_address
    assert updated.quantity_kg == Decimal('10.00')


def test_update_claimed_listing_is_forbidden(listings, arbitrator, listing, donor, ngo):
    arbitrator.claim(listing.listing_id, ngo.ngo_id)

    with pytest.raises(Forbidden) as exc:
        listings.update_listing(listing.listing_id, donor, ListingUpdate(food_type='Changed'))

    assert exc.value.to_dict()['current_status'] == 'claimed'
    assert db.session.get(FoodListing, listing.listing_id, populate_existing=True).food_type == 'Jollof rice'


def test_delete_claimed_listing_is_forbidden(listings, arbitrator, store, listing, donor, ngo):
    arbitrator.claim(listing.listing_id, ngo.ngo_id)

    with pytest.raises(Forbidden):
        listings.delete_listing(listing.listing_id, donor)

    assert store.get_listing(listing.listing_id) is not None


def test_delete_open_listing(listings, store, listing, donor):
    listings.delete_listing(listing.listing_id, donor)
    assert store.get_listing(listing.listing_id) is None


def test_other_donor_cannot_touch_listing(listings, listing, make_donor):
    intruder = make_donor(email='other@test.com', name='Other Kitchen')

    with pytest.raises(NotFound):
        listings.update_listing(listing.listing_id, intruder, ListingUpdate(food_type='Mine'))
    with pytest.raises(NotFound):
        listings.delete_listing(listing.listing_id, intruder)


@pytest.mark.parametrize('food_type', [None, '', '   ', 42])
def test_update_rejects_missing_food_type(listings, listing, donor, food_type):
    with pytest.raises(ValueError, match='food_type'):
        listings.update_listing(listing.listing_id, donor, ListingUpdate(food_type=food_type))

    assert db.session.get(FoodListing, listing.listing_id, populate_existing=True).food_type == 'Jollof rice'


def test_create_listing_requires_food_type(listings, donor):
    with pytest.raises(ValueError, match='food_type'):
        listings.create_listing(donor, '  ', '5', 10, utcnow() + timedelta(hours=1))
    assert FoodListing.query.count() == 0


# ==========================================
#  HTTP
# ==========================================

def test_post_listing(client, donor_headers):
    res = client.post('/api/listings', headers=donor_headers, json={
        'food_type': 'Fried rice',
        'quantity_kg': 15,
        'meal_equivalent': 45,
        'expiry_time': (utcnow() + timedelta(hours=5)).isoformat() + 'Z',
        'pickup_address': '3 Broad Street',
        'latitude': 6.45,
        'longitude': 3.39,
    })

    assert res.status_code == 201
    body = res.get_json()
    assert body['listing']['status'] == 'open'
    assert body['listing']['is_locked'] is False


def test_post_listing_missing_fields(client, donor_headers):
    res = client.post('/api/listings', headers=donor_headers, json={'food_type': 'Fried rice'})
    assert res.status_code == 400


def test_post_listing_bad_coordinates(client, donor_headers):
    res = client.post('/api/listings', headers=donor_headers, json={
        'food_type': 'Fried rice',
        'quantity_kg': 15,
        'meal_equivalent': 45,
        'expiry_time': (utcnow() + timedelta(hours=5)).isoformat(),
        'pickup_address': '3 Broad Street',
        'latitude': 123,
        'longitude': 3.39,
    })
    assert res.status_code == 400


def test_ngo_cannot_post_listing(client, ngo_headers):
    res = client.post('/api/listings', headers=ngo_headers, json={})
    assert res.status_code == 403


def test_listings_require_a_token(client):
    assert client.get('/api/listings').status_code == 401


def test_ngo_feed_is_annotated(client, make_ngo, make_listing, donor, headers_for):
    ngo = make_ngo(latitude=0, longitude=0, service_radius_km=10)
    near = make_listing(donor, latitude=0, longitude=0.05)
    make_listing(donor, latitude=None, longitude=None)

    res = client.get('/api/listings', headers=headers_for(ngo.profile))

    assert res.status_code == 200
    feed = res.get_json()['listings']
    assert feed[0]['listing_id'] == near.listing_id
    assert feed[0]['within_service_radius'] is True
    assert feed[0]['distance_km'] == pytest.approx(5.56, abs=0.01)
    assert feed[1]['distance_km'] is None


def test_put_claimed_listing_returns_403(client, arbitrator, listing, ngo, donor_headers):
    arbitrator.claim(listing.listing_id, ngo.ngo_id)

    res = client.put(f'/api/listings/{listing.listing_id}', headers=donor_headers,
                     json={'food_type': 'Changed'})

    assert res.status_code == 403
    assert res.get_json()['current_status'] == 'claimed'


def test_delete_listing_endpoint(client, listing, donor_headers):
    res = client.delete(f'/api/listings/{listing.listing_id}', headers=donor_headers)
    assert res.status_code == 200
    assert client.get(f'/api/listings/{listing.listing_id}').status_code == 404


def test_listing_matches_endpoint(client, make_ngo, make_listing, donor, donor_headers):
    listing = make_listing(donor, latitude=0, longitude=0)
    near = make_ngo(latitude=0, longitude=0.05)

    res = client.get(f'/api/listings/{listing.listing_id}/matches', headers=donor_headers)

    assert res.status_code == 200
    assert [m['ngo_id'] for m in res.get_json()['matches']] == [near.ngo_id]


def test_put_listing_with_null_food_type_returns_400(client, listing, donor_headers):
    res = client.put(f'/api/listings/{listing.listing_id}', headers=donor_headers,
                     json={'food_type': None})

    assert res.status_code == 400
    assert res.get_json()['error'] == 'food_type is required'


# ==========================================
#  PUBLIC FEED FILTERS
# ==========================================

def test_donor_feed_is_open_listings_only(client, make_listing, donor, donor_headers):
    newest = make_listing(donor)
    make_listing(donor, status='claimed', is_locked=True)
    make_listing(donor, expires_in=timedelta(hours=-1))

    res = client.get('/api/listings', headers=donor_headers)

    assert res.status_code == 200
    assert [item['listing_id'] for item in res.get_json()['listings']] == [newest.listing_id]


def test_feed_filters_by_status(client, make_listing, donor, donor_headers):
    make_listing(donor)
    claimed = make_listing(donor, status='claimed', is_locked=True)

    res = client.get('/api/listings?status=claimed', headers=donor_headers)

    assert res.status_code == 200
    assert [item['listing_id'] for item in res.get_json()['listings']] == [claimed.listing_id]


def test_feed_filters_by_donor_city(client, make_donor, make_listing, donor, donor_headers):
    make_listing(donor)
    abuja = make_donor(email='abuja@test.com', name='Capital Kitchen', city='Abuja')
    there = make_listing(abuja)

    res = client.get('/api/listings?city=Abuja', headers=donor_headers)

    assert res.status_code == 200
    body = res.get_json()
    assert body['count'] == 1
    assert body['listings'][0]['listing_id'] == there.listing_id


def test_feed_rejects_unknown_status(client, donor_headers):
    res = client.get('/api/listings?status=vanished', headers=donor_headers)
    assert res.status_code == 400
