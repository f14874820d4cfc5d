"""FastAPI dependency injection helpers."""

from fastapi.requests import HTTPConnection

from ride_dispatch.engine import DispatchEngine


def get_engine(connection: HTTPConnection) -> DispatchEngine:
    """Return the process-wide engine; works for HTTP and WebSocket routes."""
    return connection.app.state.engine
