"""
Flask error handlers and request validation for the RWE command API.

Usage:
    from api.error_handlers import setup_error_handlers

    setup_error_handlers(app)
"""

import logging
from functools import wraps

from flask import current_app, jsonify, request

from core.errors import InvalidArgumentError, RWEError

logger = logging.getLogger('rwe.errors')


def setup_error_handlers(app):
    """Register error handlers with Flask app."""

    @app.errorhandler(RWEError)
    def handle_rwe_error(error):
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            f'{error.error_type}: {error.message}',
            extra={
                'error_type': error.error_type,
                'details': error.details,
                'path': request.path
            }
        )

        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': f'Resource not found: {request.path}'
        }), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': f'Method {request.method} not allowed for {request.path}'
        }), 405

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.exception(
            f'Internal server error: {str(error)}',
            extra={'path': request.path}
        )

        message = str(error) if current_app.debug else 'An internal error occurred'
        return jsonify({
            'error': 'internal_error',
            'message': message
        }), 500


def validate_request_json(*required_fields):
    """
    Decorator to validate required JSON fields in request.

    Usage:
        @validate_request_json('role', 'content')
        def save_message(conversation_id):
            data = request.get_json()
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            data = request.get_json(silent=True)

            if not isinstance(data, dict):
                raise InvalidArgumentError('Request body must be a JSON object')

            missing = [f for f in required_fields if f not in data]
            if missing:
                raise InvalidArgumentError(
                    f'Missing required fields: {", ".join(missing)}',
                    missing_fields=missing
                )

            return func(*args, **kwargs)
        return wrapper
    return decorator
