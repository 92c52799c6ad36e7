from flask import Blueprint, request, jsonify, current_app

from services.listings import ngo_for_profile
from utils import current_profile_id, parse_timestamp, role_required

deliveries_bp = Blueprint('deliveries', __name__)


def _store():
    return current_app.extensions['food_store']


def _deliveries():
    return current_app.extensions['delivery_service']


def _int_field(value, field):
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f'{field} must be an integer')


# ==========================================
#  1. ASSIGN A DELIVERY
# ==========================================
@deliveries_bp.route('/api/deliveries', methods=['POST'])
@role_required('ngo')
def create_delivery():
    ngo = ngo_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    if not data.get('claim_id'):
        return jsonify({'error': 'claim_id is required'}), 400

    try:
        claim_id = _int_field(data['claim_id'], 'claim_id')
        volunteer_id = _int_field(data.get('volunteer_id'), 'volunteer_id')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    delivery = _deliveries().assign(claim_id, ngo, volunteer_id)
    return jsonify({
        'message': 'Delivery created successfully',
        'delivery': delivery.to_dict()
    }), 201


# ==========================================
#  2. READ
# ==========================================
@deliveries_bp.route('/api/deliveries/my', methods=['GET'])
@role_required('ngo')
def get_my_deliveries():
    store = _store()
    ngo = ngo_for_profile(store, current_profile_id())
    deliveries = [d.to_dict() for d in store.list_deliveries_for_ngo(ngo.ngo_id, request.args.get('status'))]
    return jsonify({'deliveries': deliveries, 'count': len(deliveries)}), 200


@deliveries_bp.route('/api/deliveries/<int:delivery_id>', methods=['GET'])
@role_required('ngo')
def get_delivery(delivery_id):
    ngo = ngo_for_profile(_store(), current_profile_id())
    delivery = _deliveries().owned_delivery(delivery_id, ngo)

    entry = delivery.to_dict()
    entry['claim'] = delivery.claim.to_dict()
    entry['listing'] = delivery.claim.listing.to_dict()
    return jsonify({'delivery': entry}), 200


# ==========================================
#  3. STATUS & REASSIGNMENT
# ==========================================
@deliveries_bp.route('/api/deliveries/<int:delivery_id>/status', methods=['PUT'])
@role_required('ngo')
def update_delivery_status(delivery_id):
    ngo = ngo_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    if not data.get('delivery_status'):
        return jsonify({'error': 'delivery_status is required'}), 400

    try:
        delivery = _deliveries().update_status(
            delivery_id, ngo, data['delivery_status'],
            pickup_time=parse_timestamp(data.get('pickup_time')),
            delivery_time=parse_timestamp(data.get('delivery_time')),
            proof_image_url=data.get('proof_image_url'),
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'message': 'Delivery status updated successfully',
        'delivery': delivery.to_dict()
    }), 200


@deliveries_bp.route('/api/deliveries/<int:delivery_id>/assign', methods=['PUT'])
@role_required('ngo')
def reassign_volunteer(delivery_id):
    ngo = ngo_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    if not data.get('volunteer_id'):
        return jsonify({'error': 'volunteer_id is required'}), 400

    try:
        volunteer_id = _int_field(data['volunteer_id'], 'volunteer_id')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    delivery = _deliveries().reassign(delivery_id, ngo, volunteer_id)
    return jsonify({
        'message': 'Volunteer assigned successfully',
        'delivery': delivery.to_dict()
    }), 200
