"""
Web package for the tunnel server.
Provides a read-only HTTP status API.
"""

from server.web.app import create_app, start_status_server

__all__ = ['create_app', 'start_status_server']
