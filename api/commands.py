"""
RWE Command API

Flask blueprint exposing every storage, search and maintenance operation
as a JSON route for the desktop front-end.

Usage:
    from api.commands import commands
    app.register_blueprint(commands, url_prefix='/api')
"""

import logging

from flask import Blueprint, current_app, jsonify, request

import rwe_backup
from api.error_handlers import validate_request_json
from core.errors import InvalidArgumentError, NotFoundError, RWEError
from database import open_repository
from search import ContentSearcher

commands = Blueprint('commands', __name__)

logger = logging.getLogger(__name__)


def get_repository():
    return current_app.extensions['rwe_repository']


def get_config():
    return current_app.extensions['rwe_config']


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidArgumentError(f'{name} must be an integer', param=name)


def _text_field(data, name):
    value = data[name]
    if value is not None and not isinstance(value, str):
        raise InvalidArgumentError(f'{name} must be a string', field=name)
    return value


# =============================================================================
# Conversations
# =============================================================================

@commands.route('/conversations', methods=['POST'])
@validate_request_json('name')
def create_conversation():
    data = request.get_json()
    convo_id = get_repository().create_conversation(
        _text_field(data, 'name'),
        data.get('summary', '')
    )
    return jsonify({'id': convo_id}), 201


@commands.route('/conversations', methods=['GET'])
def list_conversations():
    """
    List conversations, newest first.

    Query params:
        limit: Page size (omit for all conversations)
        offset: Rows to skip
    """
    limit = _int_arg('limit')
    repo = get_repository()

    if limit is None:
        conversations = repo.get_conversations()
    else:
        conversations = repo.get_conversations_paginated(limit, _int_arg('offset', 0))

    return jsonify({'conversations': [c.to_dict() for c in conversations]})


@commands.route('/conversations/count')
def conversations_count():
    return jsonify({'count': get_repository().get_conversations_count()})


@commands.route('/conversations/<int:conversation_id>', methods=['GET'])
def get_conversation(conversation_id):
    conversation = get_repository().get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError('Conversation not found', conversation_id=conversation_id)
    return jsonify(conversation.to_dict())


@commands.route('/conversations/<int:conversation_id>', methods=['DELETE'])
def delete_conversation(conversation_id):
    return jsonify({'deleted': get_repository().delete_conversation(conversation_id)})


@commands.route('/conversations/<int:conversation_id>/notes', methods=['PUT'])
@validate_request_json('notes')
def update_notes(conversation_id):
    notes = _text_field(request.get_json(), 'notes')
    return jsonify({'updated': get_repository().update_conversation_notes(conversation_id, notes)})


@commands.route('/conversations/<int:conversation_id>/summary', methods=['PUT'])
@validate_request_json('summary')
def update_summary(conversation_id):
    summary = _text_field(request.get_json(), 'summary')
    return jsonify({'updated': get_repository().update_conversation_summary(conversation_id, summary)})


# =============================================================================
# Messages
# =============================================================================

@commands.route('/conversations/<int:conversation_id>/messages', methods=['GET'])
def get_messages(conversation_id):
    messages = get_repository().get_messages(conversation_id)
    return jsonify({'messages': [m.to_dict() for m in messages]})


@commands.route('/conversations/<int:conversation_id>/messages', methods=['POST'])
@validate_request_json('role', 'content')
def save_message(conversation_id):
    data = request.get_json()
    message_id = get_repository().save_message(
        conversation_id,
        _text_field(data, 'role'),
        _text_field(data, 'content')
    )
    return jsonify({'id': message_id}), 201


# =============================================================================
# Mind-maps
# =============================================================================

@commands.route('/conversations/<int:conversation_id>/mindmap', methods=['GET'])
def get_mindmap(conversation_id):
    mindmap = get_repository().get_mindmap_data(conversation_id)
    if mindmap is None:
        raise NotFoundError('Mind-map not found', conversation_id=conversation_id)
    return jsonify(mindmap.to_dict())


@commands.route('/conversations/<int:conversation_id>/mindmap', methods=['PUT'])
@validate_request_json('title', 'nodes', 'connections')
def save_mindmap(conversation_id):
    data = request.get_json()
    mindmap_id = get_repository().save_mindmap_data(
        conversation_id,
        _text_field(data, 'title'),
        _text_field(data, 'nodes'),
        _text_field(data, 'connections'),
        data.get('theme')
    )
    return jsonify({'id': mindmap_id})


# =============================================================================
# Analytics & Search
# =============================================================================

@commands.route('/analytics')
def conversation_analytics():
    """
    Conversation counts per bucket.

    Query params:
        period: day, week or month
    """
    period = request.args.get('period', 'day')
    analytics = get_repository().get_conversation_analytics(period)
    return jsonify({'period': period, 'data': [a.to_dict() for a in analytics]})


@commands.route('/search')
def search_content():
    """
    Ranked search over messages and conversation summaries.

    Query params:
        q: Search query
    """
    query = request.args.get('q', '')
    results = ContentSearcher(get_repository()).search(query)
    return jsonify({
        'query': query,
        'results': [r.to_dict() for r in results],
        'total': len(results),
    })


# =============================================================================
# Preferences
# =============================================================================

@commands.route('/preferences/api-key', methods=['GET'])
def get_api_key():
    return jsonify({'api_key': get_repository().get_api_key()})


@commands.route('/preferences/api-key', methods=['PUT'])
@validate_request_json('api_key')
def set_api_key():
    get_repository().set_api_key(_text_field(request.get_json(), 'api_key'))
    return jsonify({'saved': True})


# =============================================================================
# Maintenance
# =============================================================================

@commands.route('/database/info')
def database_info():
    info = get_repository().get_database_info(app_version=get_config().app_version)
    return jsonify(info.to_dict())


@commands.route('/database/backup', methods=['POST'])
def backup_database():
    path = rwe_backup.backup_database(get_repository(), get_config())
    return jsonify({'path': path}), 201


@commands.route('/data/export', methods=['POST'])
def export_user_data():
    return jsonify({'path': rwe_backup.export_user_data(get_config())}), 201


def _reopen_repository(config):
    current_app.extensions['rwe_repository'] = open_repository(config)


@commands.route('/data/import', methods=['POST'])
@validate_request_json('path')
def import_user_data():
    """Replace the store with another file, then reopen and migrate it."""
    config = get_config()
    import_path = _text_field(request.get_json(), 'path')

    get_repository().close()
    try:
        rwe_backup.import_user_data(import_path, config)
    except Exception:
        logger.error('Import failed, reopening the existing store', exc_info=True,
                     extra={'import_path': import_path})
        try:
            _reopen_repository(config)
        except RWEError as e:
            logger.error(f'Reopen after failed import also failed: {e.message}')
        raise

    _reopen_repository(config)

    return jsonify({'imported': True})


@commands.route('/data/prepare-update', methods=['POST'])
def prepare_for_update():
    return jsonify({'path': rwe_backup.prepare_for_update(get_config())}), 201


@commands.route('/app/version')
def app_version():
    return jsonify({'version': get_config().app_version})


@commands.route('/app/data-directory')
def data_directory():
    return jsonify({'path': rwe_backup.get_data_directory(get_config())})
