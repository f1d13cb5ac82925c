"""
Core utilities for RWE: configuration, errors and logging.
"""

__version__ = '1.0.0'
