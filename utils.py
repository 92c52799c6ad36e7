from datetime import datetime, timezone
from functools import wraps

from flask import jsonify
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request


def role_required(*allowed_roles):
    """
    Bearer-token guard. The token identity is the profile id and the
    `role` claim says what the caller is allowed to do.
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            role = get_jwt().get('role')
            if allowed_roles and role not in allowed_roles:
                return jsonify({
                    'error': f'Access restricted to: {", ".join(allowed_roles)}',
                    'kind': 'forbidden',
                }), 403
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def current_profile_id():
    return int(get_jwt_identity())


def current_role():
    return get_jwt().get('role')


def parse_timestamp(value):
    """
    ISO-8601 string to naive UTC. Offsets are converted; naive input is
    taken to be UTC already.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_coordinate(value, low, high, name):
    if value is None or value == '':
        return None
    number = float(value)
    if not low <= number <= high:
        raise ValueError(f'{name} must be between {low} and {high}')
    return number


def parse_latitude(value):
    return parse_coordinate(value, -90, 90, 'latitude')


def parse_longitude(value):
    return parse_coordinate(value, -180, 180, 'longitude')
