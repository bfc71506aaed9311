"""
Telephony provider integration.

Do not import the client or credential modules here; they pull in the ORM.
"""

__all__ = [
    "config",
    "credentials",
    "exotel",
    "models",
]
