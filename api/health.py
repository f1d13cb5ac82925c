"""
RWE Health Check Endpoints

- /health - liveness (is the process alive?)
- /ready  - readiness (does the store answer queries?)
"""

import time

from flask import Blueprint, current_app, jsonify

from core.errors import RWEError

health_bp = Blueprint('health', __name__)

STARTUP_TIME = time.time()


def check_database():
    """Check that the store is reachable and migrated."""
    repo = current_app.extensions['rwe_repository']
    try:
        repo.check_connection()
        info = repo.get_database_info()
    except RWEError as e:
        return {'status': 'error', 'error': e.message}

    return {
        'status': 'ok',
        'schema_version': info.schema_version,
        'conversations': info.conversations_count,
    }


@health_bp.route('/health')
def liveness():
    return jsonify({
        'status': 'ok',
        'uptime_seconds': int(time.time() - STARTUP_TIME)
    })


@health_bp.route('/ready')
def readiness():
    db_check = check_database()
    is_ready = db_check.get('status') == 'ok'

    response = {
        'status': 'ready' if is_ready else 'not_ready',
        'checks': {'database': db_check}
    }
    return jsonify(response), 200 if is_ready else 503
