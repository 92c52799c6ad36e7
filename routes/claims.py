from flask import Blueprint, request, jsonify, current_app

from errors import NotFound
from services.listings import ngo_for_profile
from services.matching import nearest_volunteers
from services.updates import ClaimUpdate
from utils import current_profile_id, parse_timestamp, role_required

claims_bp = Blueprint('claims', __name__)


def _store():
    return current_app.extensions['food_store']


def _arbitrator():
    return current_app.extensions['claim_arbitrator']


# ==========================================
#  1. CLAIM A LISTING
# ==========================================
@claims_bp.route('/api/claims', methods=['POST'])
@role_required('ngo')
def create_claim():
    ngo = ngo_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    if not data.get('listing_id'):
        return jsonify({'error': 'listing_id is required'}), 400

    try:
        listing_id = int(data['listing_id'])
        pickup_time = parse_timestamp(data.get('pickup_scheduled_time'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    claim = _arbitrator().claim(listing_id, ngo.ngo_id, pickup_time, data.get('strategy_notes'))

    return jsonify({
        'message': 'Listing claimed successfully',
        'claim': claim.to_dict()
    }), 201


# ==========================================
#  2. MY CLAIMS
# ==========================================
@claims_bp.route('/api/claims/my', methods=['GET'])
@role_required('ngo')
def get_my_claims():
    store = _store()
    ngo = ngo_for_profile(store, current_profile_id())
    claims = store.list_claims_for_ngo(ngo.ngo_id, request.args.get('status'))

    results = []
    for claim in claims:
        entry = claim.to_dict()
        entry['listing'] = claim.listing.to_dict() if claim.listing else None
        results.append(entry)
    return jsonify({'claims': results, 'count': len(results)}), 200


@claims_bp.route('/api/claims/<int:claim_id>', methods=['GET'])
@role_required('ngo')
def get_claim(claim_id):
    store = _store()
    ngo = ngo_for_profile(store, current_profile_id())
    claim = store.get_claim(claim_id)
    if claim is None or claim.ngo_id != ngo.ngo_id:
        raise NotFound('Claim not found or access denied')

    entry = claim.to_dict()
    entry['listing'] = claim.listing.to_dict() if claim.listing else None
    entry['delivery'] = claim.delivery.to_dict() if claim.delivery else None
    return jsonify({'claim': entry}), 200


# ==========================================
#  3. UPDATE / CANCEL
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>', methods=['PUT'])
@role_required('ngo')
def update_claim(claim_id):
    ngo = ngo_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    try:
        update = ClaimUpdate.from_dict(data, parsers={'pickup_scheduled_time': parse_timestamp})
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if update.is_empty():
        return jsonify({'error': 'No updatable fields provided'}), 400

    claim = _arbitrator().update_claim(claim_id, ngo.ngo_id, update)
    return jsonify({
        'message': 'Claim updated successfully',
        'claim': claim.to_dict()
    }), 200


@claims_bp.route('/api/claims/<int:claim_id>', methods=['DELETE'])
@role_required('ngo')
def cancel_claim(claim_id):
    ngo = ngo_for_profile(_store(), current_profile_id())
    _arbitrator().cancel_claim(claim_id, ngo.ngo_id)
    return jsonify({'message': 'Claim cancelled successfully'}), 200


# ==========================================
#  4. VOLUNTEERS NEAR THE PICKUP
# ==========================================
@claims_bp.route('/api/claims/<int:claim_id>/nearby-volunteers', methods=['GET'])
@role_required('ngo')
def get_nearby_volunteers(claim_id):
    store = _store()
    ngo = ngo_for_profile(store, current_profile_id())
    claim = store.get_claim(claim_id)
    if claim is None or claim.ngo_id != ngo.ngo_id:
        raise NotFound('Claim not found or access denied')

    try:
        max_distance_km = float(request.args.get('max_distance_km', 20))
    except ValueError:
        return jsonify({'error': 'max_distance_km must be a number'}), 400

    listing = claim.listing
    matches = nearest_volunteers(store, ngo.ngo_id, listing.latitude, listing.longitude, max_distance_km)
    return jsonify({
        'volunteers': [{
            'volunteer_id': m.volunteer.volunteer_id,
            'full_name': m.volunteer.full_name,
            'phone': m.volunteer.phone,
            'vehicle_type': m.volunteer.vehicle_type,
            'distance_km': round(m.distance_km, 2),
        } for m in matches],
        'count': len(matches)
    }), 200
