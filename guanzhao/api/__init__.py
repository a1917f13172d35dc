"""API package exports."""

from guanzhao.api.middleware import CorrelationIdMiddleware
from guanzhao.api.routes import router

__all__ = ["router", "CorrelationIdMiddleware"]
