"""
Contacts as seen by the reconciliation core.
"""

__all__: list[str] = []
