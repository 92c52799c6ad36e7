"""
Socket.IO connection handling.

A client connects with its access token (``auth={'token': ...}``, an
``Authorization: Bearer`` header, or ``?token=``) and is placed in its
profile room, which is where push notifications are emitted.
"""
import logging

from flask import current_app, request
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import ConnectionRefusedError, join_room
from jwt import PyJWTError

from extensions import socketio
from services.notifications import profile_room

logger = logging.getLogger(__name__)


def _token_from(auth):
    if isinstance(auth, dict) and auth.get('token'):
        return auth['token']
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header.replace('Bearer ', '', 1).strip() or None
    return request.args.get('token')


@socketio.on('connect')
def join_profile_room(auth=None):
    token = _token_from(auth)
    if not token:
        raise ConnectionRefusedError('unauthorized')

    try:
        claims = decode_token(token)
    except (JWTExtendedException, PyJWTError) as e:
        logger.info("Socket connection refused: %s", e)
        raise ConnectionRefusedError('unauthorized')

    profile_id = claims[current_app.config['JWT_IDENTITY_CLAIM']]
    join_room(profile_room(profile_id))
    logger.debug("Profile %s joined its notification room", profile_id)
