"""Gateway → order-service → payment-service demo chain with logs, metrics and traces."""

__version__ = "1.0.0"
