from datetime import datetime
from decimal import Decimal

import pytest

from errors import Conflict, NotFound
from models import ImpactMetric
from services.lifecycle import is_coherent


@pytest.fixture
def deliveries(app):
    return app.extensions['delivery_service']


@pytest.fixture
def claim(arbitrator, listing, ngo):
    return arbitrator.claim(listing.listing_id, ngo.ngo_id)


def test_assign_delivery(deliveries, claim, ngo, make_volunteer):
    volunteer = make_volunteer(ngo)

    delivery = deliveries.assign(claim.claim_id, ngo, volunteer.volunteer_id)

    assert delivery.delivery_status == 'assigned'
    assert delivery.volunteer_id == volunteer.volunteer_id


def test_second_delivery_for_claim_conflicts(deliveries, claim, ngo):
    deliveries.assign(claim.claim_id, ngo)

    with pytest.raises(Conflict):
        deliveries.assign(claim.claim_id, ngo)


def test_volunteer_from_another_ngo_is_rejected(deliveries, claim, ngo, make_ngo, make_volunteer):
    stranger = make_volunteer(make_ngo(email='other@test.com', name='Other'))

    with pytest.raises(NotFound):
        deliveries.assign(claim.claim_id, ngo, stranger.volunteer_id)


def test_in_transit_marks_claim_in_progress(deliveries, store, claim, ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)

    deliveries.update_status(delivery.delivery_id, ngo, 'in_transit')

    assert delivery.pickup_time is not None
    assert store.get_claim(claim.claim_id).status == 'in_progress'


def test_delivered_completes_claim_listing_and_records_impact(deliveries, store, claim, listing, ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)

    deliveries.update_status(delivery.delivery_id, ngo, 'delivered')

    assert delivery.delivery_time is not None
    assert store.get_claim(claim.claim_id).status == 'completed'
    fresh = store.get_listing(listing.listing_id)
    assert (fresh.status, fresh.is_locked) == ('completed', True)
    assert is_coherent(fresh)

    metric = ImpactMetric.query.filter_by(delivery_id=delivery.delivery_id).one()
    assert metric.meals_served == 25
    assert metric.food_saved_kg == Decimal('10.00')
    assert metric.co2_reduced_kg == Decimal('25.00')


def test_repeat_delivered_records_impact_once(deliveries, claim, ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)

    deliveries.update_status(delivery.delivery_id, ngo, 'delivered')
    deliveries.update_status(delivery.delivery_id, ngo, 'delivered')

    assert ImpactMetric.query.count() == 1


def test_explicit_times_are_kept(deliveries, claim, ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)
    picked_up = datetime(2026, 3, 1, 9, 30)

    deliveries.update_status(delivery.delivery_id, ngo, 'in_transit', pickup_time=picked_up)

    assert delivery.pickup_time == picked_up


def test_invalid_status(deliveries, claim, ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)

    with pytest.raises(ValueError):
        deliveries.update_status(delivery.delivery_id, ngo, 'teleported')


def test_reassign_volunteer(deliveries, claim, ngo, make_volunteer):
    first = make_volunteer(ngo, name='First')
    second = make_volunteer(ngo, name='Second')
    delivery = deliveries.assign(claim.claim_id, ngo, first.volunteer_id)

    deliveries.reassign(delivery.delivery_id, ngo, second.volunteer_id)

    assert delivery.volunteer_id == second.volunteer_id


def test_completion_notifies_ngo_and_donor(deliveries, claim, ngo, notifications):
    delivery = deliveries.assign(claim.claim_id, ngo)
    notifications.drain()

    deliveries.update_status(delivery.delivery_id, ngo, 'delivered')

    reports = notifications.drain()
    assert [r.event for r in reports] == ['delivery_completed']
    assert reports[0].total == 2


# ==========================================
#  HTTP
# ==========================================

def test_post_delivery_twice_returns_409(client, claim, ngo_headers):
    first = client.post('/api/deliveries', headers=ngo_headers, json={'claim_id': claim.claim_id})
    second = client.post('/api/deliveries', headers=ngo_headers, json={'claim_id': claim.claim_id})

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.get_json()['kind'] == 'conflict'


def test_put_delivery_status(client, claim, ngo_headers):
    delivery_id = client.post('/api/deliveries', headers=ngo_headers,
                              json={'claim_id': claim.claim_id}).get_json()['delivery']['delivery_id']

    res = client.put(f'/api/deliveries/{delivery_id}/status', headers=ngo_headers,
                     json={'delivery_status': 'delivered', 'proof_image_url': 'https://cdn.test/proof.jpg'})

    assert res.status_code == 200
    body = res.get_json()['delivery']
    assert body['delivery_status'] == 'delivered'
    assert body['proof_image_url'] == 'https://cdn.test/proof.jpg'


def test_put_delivery_bad_status(client, claim, ngo_headers):
    delivery_id = client.post('/api/deliveries', headers=ngo_headers,
                              json={'claim_id': claim.claim_id}).get_json()['delivery']['delivery_id']

    res = client.put(f'/api/deliveries/{delivery_id}/status', headers=ngo_headers,
                     json={'delivery_status': 'lost'})

    assert res.status_code == 400


def test_owned_delivery_hides_other_ngos_deliveries(deliveries, claim, ngo, make_ngo):
    delivery = deliveries.assign(claim.claim_id, ngo)
    other = make_ngo(email='other@test.com', name='Other')

    assert deliveries.owned_delivery(delivery.delivery_id, ngo) is delivery
    with pytest.raises(NotFound):
        deliveries.owned_delivery(delivery.delivery_id, other)


def test_get_delivery_of_another_ngo_returns_404(client, claim, ngo_headers, make_ngo, headers_for):
    delivery_id = client.post('/api/deliveries', headers=ngo_headers,
                              json={'claim_id': claim.claim_id}).get_json()['delivery']['delivery_id']
    other = make_ngo(email='other@test.com', name='Other')

    mine = client.get(f'/api/deliveries/{delivery_id}', headers=ngo_headers)
    theirs = client.get(f'/api/deliveries/{delivery_id}', headers=headers_for(other.profile))

    assert mine.status_code == 200
    assert mine.get_json()['delivery']['claim']['claim_id'] == claim.claim_id
    assert theirs.status_code == 404


@pytest.mark.parametrize('payload', [
    {'claim_id': 'abc'},
    {'claim_id': ['1']},
    {'claim_id': 1, 'volunteer_id': 'first'},
])
def test_post_delivery_with_non_integer_ids_returns_400(client, claim, ngo_headers, payload):
    res = client.post('/api/deliveries', headers=ngo_headers, json=payload)

    assert res.status_code == 400
    assert 'must be an integer' in res.get_json()['error']


def test_post_delivery_accepts_numeric_string_volunteer(client, claim, ngo, ngo_headers, make_volunteer):
    volunteer = make_volunteer(ngo)

    res = client.post('/api/deliveries', headers=ngo_headers,
                      json={'claim_id': str(claim.claim_id), 'volunteer_id': str(volunteer.volunteer_id)})

    assert res.status_code == 201
    assert res.get_json()['delivery']['volunteer_id'] == volunteer.volunteer_id


def test_reassign_with_non_integer_volunteer_returns_400(client, claim, ngo_headers):
    delivery_id = client.post('/api/deliveries', headers=ngo_headers,
                              json={'claim_id': claim.claim_id}).get_json()['delivery']['delivery_id']

    res = client.put(f'/api/deliveries/{delivery_id}/assign', headers=ngo_headers,
                     json={'volunteer_id': 'second'})

    assert res.status_code == 400
