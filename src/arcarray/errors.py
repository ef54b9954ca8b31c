"""Custom exception hierarchy for arcarray."""

from typing import Optional


class ArcArrayError(Exception):
    """Base exception for arcarray library."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class ServiceError(ArcArrayError):
    """Errors reported by an ArcGIS service that have no more specific type."""

    def __init__(self, message: str, cause: Optional[Exception] = None, code: Optional[int] = None):
        super().__init__(message, cause)
        self.code = code


class NetworkError(ArcArrayError, ConnectionError):
    """The endpoint could not be reached or did not answer in time."""
    pass


class AuthError(ServiceError):
    """Missing, invalid, expired or insufficiently privileged credentials."""
    pass


class QueryError(ServiceError):
    """Malformed filter, unknown field or otherwise invalid request."""
    pass


class ExtentError(QueryError):
    """Spatial request lies outside the extent of the service."""
    pass


class ParseError(ArcArrayError):
    """Data parsing errors."""
    pass


class ConfigurationError(ArcArrayError):
    """Configuration and setup errors."""
    pass
