"""Monitoring and observability package."""
from .logging import log_security_event, setup_logging
from .metrics import metrics

__all__ = ["log_security_event", "metrics", "setup_logging"]
