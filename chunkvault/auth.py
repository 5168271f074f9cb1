"""
API token authentication for the JSON routes.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def verify_token(expected: str, presented: str) -> bool:
    """
    Compare an API token in constant time.

    Args:
        expected: Configured token
        presented: Token sent by the client

    Returns:
        True if tokens match, False otherwise
    """
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode(), presented.encode())


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return token.strip()


def require_token(view):
    """
    Require 'Authorization: Bearer <API_TOKEN>' when API_TOKEN is configured.

    Without a configured token the API is open.
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if expected and not verify_token(expected, _bearer_token()):
            return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)

    return wrapped
