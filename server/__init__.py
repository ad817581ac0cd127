"""Server package for TimeBar.

Provides the local control API: a Flask app over the account coordinator,
served by Waitress on 127.0.0.1.
"""
from .control_api import DEFAULT_API_PORT, ControlAPIServer, create_app

__all__ = ["create_app", "ControlAPIServer", "DEFAULT_API_PORT"]
