"""queuectl — a persistent background job queue with retries and a dead letter queue."""

__version__ = "1.0.0"
