"""Shared exception types for core trading logic."""

from typing import List, Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class VenueOrderError(RuntimeError):
    """Raised when the venue refuses or cannot process an order request."""

    def __init__(self, product_id: str, message: str):
        super().__init__(f"{product_id}: {message}")
        self.product_id = product_id
        self.message = message


class ConfigError(ValueError):
    """Raised when configuration fails schema or sanity validation."""

    def __init__(self, errors: List[str]):
        super().__init__(f"Invalid configuration: {len(errors)} error(s) found")
        self.errors = list(errors)
