"""Monitoring and observability package."""
from .logging import audit, setup_logging
from .metrics import metrics

__all__ = ["audit", "metrics", "setup_logging"]
