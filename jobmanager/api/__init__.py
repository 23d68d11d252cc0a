"""
API module.
Contains the FastAPI application, routes, and the WebSocket push channel.
"""

from jobmanager.api.main import create_app, run

__all__ = ["create_app", "run"]
