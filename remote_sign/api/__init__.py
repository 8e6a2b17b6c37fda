"""
HTTP boundary of the remote signing broker.
"""

from .remote_sign import router

__all__ = ["router"]
