"""
Local HTTP command surface for the RWE desktop front-end.

Usage:
    from api import create_app

    app = create_app(config)
"""

from .app import create_app

__all__ = ['create_app']
