"""API endpoint monitoring engine: scheduling, probing, alerting and cost tracking."""

__version__ = "0.1.0"
