from typing import Optional, Dict, Any

class ImpactLogException(Exception):
    """Base exception for all impactlog errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

class ConfigurationError(ImpactLogException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)

class FactorTableError(ConfigurationError):
    """Raised when emission factor reference data is malformed or ambiguous."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="factor_table_invalid", details=details)

class ActivityValidationError(ImpactLogException):
    """Raised when an activity record is malformed."""
    def __init__(self, message: str, code: str = "invalid_activity", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)

class InvalidScopeError(ActivityValidationError):
    """Raised when an activity scope is outside {1, 2, 3}."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_scope", details=details)

class InvalidQuantityError(ActivityValidationError):
    """Raised when an activity quantity is negative, non-finite or non-numeric."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_quantity", details=details)

class InvalidActivityFieldError(ActivityValidationError):
    """Raised for blank identifiers, unknown fields or edits to immutable fields."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_field", details=details)

class FactorNotFoundError(ImpactLogException):
    """Raised when no emission factor matches a (market, channel, scope) triple."""
    def __init__(self, message: str, code: str = "factor_not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)

class UnresolvableFactorError(FactorNotFoundError):
    """Raised by the validator when an activity cannot be matched to a factor."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unresolvable_factor", details=details)

class ActivityNotFoundError(ImpactLogException):
    """Raised when the record store has no activity with the requested id."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="activity_not_found", details=details)

class StaleCalculationError(ImpactLogException):
    """Raised to the caller of a calculation superseded by a newer request."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="stale_calculation", details=details)
