"""
Call attempt records.

Keep this package __init__ lightweight: importing models here would trigger
ORM mapping as a side effect of importing any submodule.
"""

__all__: list[str] = []
