"""
API Module - Coordination Service

HTTP and WebSocket surface of the rendezvous service.
"""

from .rest import create_app, run_api_server, ConnectionManager

__all__ = ['create_app', 'run_api_server', 'ConnectionManager']
