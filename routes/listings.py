from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required

from models import LISTING_STATUSES, utcnow
from services.listings import donor_for_profile, ngo_for_profile
from services.matching import listings_visible_to_ngo, match_ngos_for_listing, ngos_in_radius
from services.updates import ListingUpdate
from utils import (
    current_profile_id, current_role, parse_latitude, parse_longitude, parse_timestamp,
    role_required,
)
from errors import Forbidden, NotFound

listings_bp = Blueprint('listings', __name__)


def _store():
    return current_app.extensions['food_store']


def _listings():
    return current_app.extensions['listing_service']


def _round(distance):
    return round(distance, 2) if distance is not None else None


# ==========================================
#  1. CREATE LISTING
# ==========================================
@listings_bp.route('/api/listings', methods=['POST'])
@role_required('donor')
def create_listing():
    donor = donor_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    required_fields = ['food_type', 'quantity_kg', 'meal_equivalent', 'expiry_time',
                       'pickup_address', 'latitude', 'longitude']
    missing = [field for field in required_fields if data.get(field) in (None, '')]
    if missing:
        return jsonify({'error': 'Missing required fields', 'required': required_fields}), 400

    try:
        listing = _listings().create_listing(
            donor,
            food_type=data['food_type'],
            quantity_kg=data['quantity_kg'],
            meal_equivalent=data['meal_equivalent'],
            expiry_time=parse_timestamp(data['expiry_time']),
            pickup_address=data['pickup_address'],
            latitude=parse_latitude(data['latitude']),
            longitude=parse_longitude(data['longitude']),
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'message': 'Food listing created successfully',
        'listing': listing.to_dict()
    }), 201


# ==========================================
#  2. FEED
# ==========================================
@listings_bp.route('/api/listings', methods=['GET'])
@jwt_required()
def get_listings():
    """
    NGOs get every claimable listing with its distance and whether it falls
    inside their service radius. Everyone else gets the open listings,
    newest first, optionally filtered by `status` and donor `city`.
    """
    store = _store()

    if current_role() == 'ngo':
        ngo = ngo_for_profile(store, current_profile_id())
        results = []
        for item in listings_visible_to_ngo(store, ngo.ngo_id):
            entry = item.listing.to_dict()
            entry['distance_km'] = _round(item.distance_km)
            entry['within_service_radius'] = item.within_service_radius
            results.append(entry)
        return jsonify({'listings': results, 'count': len(results)}), 200

    status = request.args.get('status')
    if status and status not in LISTING_STATUSES:
        return jsonify({'error': f'Unknown listing status: {status}'}), 400

    found = store.search_listings(utcnow(), status=status, city=request.args.get('city'))
    listings = [listing.to_dict() for listing in found]
    return jsonify({'listings': listings, 'count': len(listings)}), 200


@listings_bp.route('/api/listings/my', methods=['GET'])
@role_required('donor')
def get_my_listings():
    store = _store()
    donor = donor_for_profile(store, current_profile_id())
    listings = [listing.to_dict() for listing in store.list_listings_for_donor(donor.donor_id)]
    return jsonify({'listings': listings, 'count': len(listings)}), 200


@listings_bp.route('/api/listings/<int:listing_id>', methods=['GET'])
def get_listing(listing_id):
    listing = _store().get_listing(listing_id)
    if not listing:
        raise NotFound('Listing not found')
    return jsonify({'listing': listing.to_dict()}), 200


# ==========================================
#  3. UPDATE / DELETE (only while open and unlocked)
# ==========================================
@listings_bp.route('/api/listings/<int:listing_id>', methods=['PUT'])
@role_required('donor')
def update_listing(listing_id):
    donor = donor_for_profile(_store(), current_profile_id())
    data = request.get_json() or {}

    try:
        update = ListingUpdate.from_dict(data, parsers={
            'expiry_time': parse_timestamp,
            'latitude': parse_latitude,
            'longitude': parse_longitude,
        })
        if update.is_empty():
            return jsonify({'error': 'No updatable fields provided'}), 400
        listing = _listings().update_listing(listing_id, donor, update)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'message': 'Listing updated successfully',
        'listing': listing.to_dict()
    }), 200


@listings_bp.route('/api/listings/<int:listing_id>', methods=['DELETE'])
@role_required('donor')
def delete_listing(listing_id):
    donor = donor_for_profile(_store(), current_profile_id())
    _listings().delete_listing(listing_id, donor)
    return jsonify({'message': 'Listing deleted successfully'}), 200


# ==========================================
#  4. MATCHING
# ==========================================
@listings_bp.route('/api/listings/<int:listing_id>/matches', methods=['GET'])
@role_required('donor', 'admin')
def get_listing_matches(listing_id):
    """NGOs whose service radius covers this listing, nearest first."""
    store = _store()
    if current_role() == 'donor':
        donor = donor_for_profile(store, current_profile_id())
        listing = store.get_listing(listing_id)
        if listing is not None and listing.donor_id != donor.donor_id:
            raise Forbidden('You can only view matches for your own listings')

    matches = match_ngos_for_listing(store, listing_id)
    return jsonify({
        'matches': [{'ngo_id': m.ngo_id, 'distance_km': _round(m.distance_km)} for m in matches],
        'count': len(matches)
    }), 200


@listings_bp.route('/api/ngos/nearby', methods=['GET'])
@jwt_required()
def get_nearby_ngos():
    try:
        lat = parse_latitude(request.args.get('lat'))
        lng = parse_longitude(request.args.get('lng'))
        radius_km = float(request.args.get('radius_km', 50))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if lat is None or lng is None:
        return jsonify({'error': 'lat and lng are required'}), 400

    matches = ngos_in_radius(_store(), lat, lng, radius_km)
    return jsonify({
        'ngos': [{'ngo_id': m.ngo_id, 'distance_km': _round(m.distance_km)} for m in matches],
        'count': len(matches)
    }), 200
