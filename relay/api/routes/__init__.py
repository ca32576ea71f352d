"""
API Routes
"""
from relay.api.routes import signatures

__all__ = ["signatures"]
