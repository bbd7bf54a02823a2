"""HTTP status server."""

from gralph.server.api import ApiError, cors_origins, create_app, enrich_session, run_server

__all__ = ["ApiError", "cors_origins", "create_app", "enrich_session", "run_server"]
