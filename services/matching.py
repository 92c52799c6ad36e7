"""
Geo-matching between listings, NGOs and volunteers.

Nothing here is cached: NGO radius or location edits are picked up on the
very next request.
"""
from collections import namedtuple

from errors import NotFound
from models import utcnow
from services.geo import distance_km, distance_sort_key

NGOMatch = namedtuple('NGOMatch', ['ngo_id', 'distance_km'])
VisibleListing = namedtuple('VisibleListing', ['listing', 'distance_km', 'within_service_radius'])
VolunteerMatch = namedtuple('VolunteerMatch', ['volunteer', 'distance_km'])


def _within(distance, radius_km):
    return distance is not None and radius_km is not None and distance <= radius_km


def match_ngos_for_listing(store, listing_id):
    """NGOs whose service radius covers the listing, nearest first."""
    listing = store.get_listing(listing_id)
    if listing is None:
        raise NotFound('Listing not found')

    matches = []
    for ngo in store.list_ngos():
        distance = distance_km(ngo.latitude, ngo.longitude, listing.latitude, listing.longitude)
        if _within(distance, ngo.service_radius_km):
            matches.append(NGOMatch(ngo.ngo_id, distance))

    matches.sort(key=lambda m: (m.distance_km, m.ngo_id))
    return matches


def listings_visible_to_ngo(store, ngo_id, now=None):
    """
    Every claimable listing, annotated with its distance from the NGO.

    The service radius does not filter anything here; it only sets
    `within_service_radius`. Listings with an unknown distance come last,
    newest first among themselves.
    """
    ngo = store.get_ngo(ngo_id)
    if ngo is None:
        raise NotFound('NGO profile not found')

    # Already newest first, and sort() is stable
    listings = store.list_open_listings(now or utcnow())

    visible = []
    for listing in listings:
        distance = distance_km(ngo.latitude, ngo.longitude, listing.latitude, listing.longitude)
        visible.append(VisibleListing(listing, distance, _within(distance, ngo.service_radius_km)))

    visible.sort(key=lambda v: distance_sort_key(v.distance_km))
    return visible


def ngos_in_radius(store, latitude, longitude, max_radius_km=50):
    matches = []
    for ngo in store.list_ngos():
        distance = distance_km(latitude, longitude, ngo.latitude, ngo.longitude)
        if _within(distance, max_radius_km):
            matches.append(NGOMatch(ngo.ngo_id, distance))
    matches.sort(key=lambda m: (m.distance_km, m.ngo_id))
    return matches


def nearest_volunteers(store, ngo_id, latitude, longitude, max_distance_km=20):
    """Available volunteers of one NGO close enough to a pickup point."""
    if store.get_ngo(ngo_id) is None:
        raise NotFound('NGO profile not found')

    matches = []
    for volunteer in store.list_available_volunteers(ngo_id):
        distance = distance_km(latitude, longitude, volunteer.latitude, volunteer.longitude)
        if _within(distance, max_distance_km):
            matches.append(VolunteerMatch(volunteer, distance))
    matches.sort(key=lambda m: (m.distance_km, m.volunteer.volunteer_id))
    return matches
