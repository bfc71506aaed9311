"""
Call outcome reconciliation core.

ingestor -> status_mapper -> duration -> persister, orchestrated by service;
retry and monitor hold the per-call timers.
"""
