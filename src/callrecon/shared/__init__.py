"""
Shared infrastructure: configuration-aware database access, logging, errors.
"""
