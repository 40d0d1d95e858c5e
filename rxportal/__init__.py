"""RxPortal prescription and refill management service."""

__version__ = "0.4.0"
