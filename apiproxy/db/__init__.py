from .session import get_engine, get_session_factory

__all__ = ["get_engine", "get_session_factory"]
