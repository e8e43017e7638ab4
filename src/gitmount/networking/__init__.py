"""
Control API for a running mount.
"""

from .api_server import APIHandler, create_app

__all__ = ['APIHandler', 'create_app']
