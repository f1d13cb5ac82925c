#!/usr/bin/env python3
"""
RWE Local API Server

Serves the command API to the desktop front-end. The development server
runs threaded, so every command executes on its own worker thread and the
UI never waits on the store.

Usage:
    rwe-server --port 5174
"""

import argparse
import logging
import time
import uuid

from flask import Flask, g, request

from api.commands import commands
from api.error_handlers import setup_error_handlers
from api.health import health_bp
from core.config import load_config
from core.logging_config import get_logger, setup_logging
from database import open_repository

logger = logging.getLogger(__name__)


def setup_request_logging(app):
    """Log every request with method, path, status and duration."""
    request_logger = get_logger('rwe.requests')

    @app.before_request
    def before_request():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        duration_ms = int((time.time() - g.get('start_time', time.time())) * 1000)
        request_id = g.get('request_id', 'unknown')

        if response.status_code >= 500:
            log_method = request_logger.error
        elif response.status_code >= 400:
            log_method = request_logger.warning
        else:
            log_method = request_logger.info

        log_method(
            f'{request.method} {request.path} -> {response.status_code}',
            extra={
                'request_id': request_id,
                'method': request.method,
                'path': request.path,
                'status_code': response.status_code,
                'duration_ms': duration_ms,
            }
        )

        response.headers['X-Request-ID'] = request_id
        return response


def create_app(config=None, repository=None):
    """
    Build the Flask application.

    Args:
        config: AppConfig (default: load_config())
        repository: Open ConversationRepository (default: open from config;
            migration failure aborts startup)
    """
    config = config or load_config()

    app = Flask(__name__)
    app.extensions['rwe_config'] = config
    app.extensions['rwe_repository'] = repository or open_repository(config)

    setup_request_logging(app)
    setup_error_handlers(app)

    app.register_blueprint(health_bp)
    app.register_blueprint(commands, url_prefix='/api')

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="RWE local API server")
    parser.add_argument('--config', '-c', help='Path to config.yaml')
    parser.add_argument('--host', default='127.0.0.1', help='Bind address')
    parser.add_argument('--port', '-p', type=int, default=5174, help='Port')
    parser.add_argument('--debug', action='store_true', help='Flask debug mode')
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level, json_format=config.json_logs)

    app = create_app(config)
    logger.info(f'Serving {config.db_path} on http://{args.host}:{args.port}')
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)


if __name__ == '__main__':
    main()
