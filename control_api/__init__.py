"""Control API for the stream supervisor.

Thin FastAPI surface over the supervisor's public operations, plus a
WebSocket relay of stream status events.
"""

from control_api.main import create_app

__all__ = ["create_app"]
