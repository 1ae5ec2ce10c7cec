"""
Observability module for the completion router.

Provides structured logging with per-request correlation ids.
"""
