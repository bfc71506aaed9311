"""
Provider callback HTTP surface.
"""

from callrecon.webhooks.router import router

__all__ = ["router"]
