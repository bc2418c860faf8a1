# backend/valuation_engine/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO HTTP knowledge.
The router layer is responsible for mapping these to appropriate HTTP responses.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    ├── NotFoundError
    │   ├── PortfolioNotFoundError
    │   ├── AssetNotFoundError
    │   └── TransactionNotFoundError
    ├── ProviderError
    │   ├── ProviderTransientError
    │   ├── ProviderConfigError
    │   └── SymbolNotFoundError
    ├── AllProvidersExhausted
    ├── FXRateError
    │   └── NoRateAvailable
    ├── ReconciliationError
    │   └── OversoldPosition
    └── StaleWrite

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when circuit breaker is open and blocking requests

Propagation policy:
    - Provider errors degrade: the chain moves on, callers fall back
    - Data-integrity errors (OversoldPosition) abort the recompute cycle
    - StaleWrite is expected under concurrent triggers and is discarded
"""

from datetime import date
from decimal import Decimal


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when input validation fails.

    This is for programmatic validation errors (invalid parameters, missing
    scope, etc.), NOT for request body validation which is handled by Pydantic.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Portfolio", "Asset")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class PortfolioNotFoundError(NotFoundError):
    def __init__(self, portfolio_id: int) -> None:
        self.portfolio_id = portfolio_id
        super().__init__(
            f"Portfolio {portfolio_id} not found",
            resource_type="Portfolio",
            resource_id=portfolio_id,
        )


class AssetNotFoundError(NotFoundError):
    def __init__(self, asset_id: int) -> None:
        self.asset_id = asset_id
        super().__init__(
            f"Asset {asset_id} not found",
            resource_type="Asset",
            resource_id=asset_id,
        )


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: int) -> None:
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} not found",
            resource_type="Transaction",
            resource_id=transaction_id,
        )


# =============================================================================
# PROVIDER ERRORS
# =============================================================================


class ProviderError(ServiceError):
    """
    Base exception for a single provider's failure.

    Any ProviderError that is neither transient nor a config error is
    recorded by the chain and the next provider is tried.

    Attributes:
        provider: Name of the provider that failed
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """
    Raised when a provider is temporarily unable to answer.

    Examples:
    - Network timeout or connection reset
    - Server errors (500, 502, 503)
    - Rate limiting
    - Open circuit breaker

    The chain logs a warning and continues with the next provider.
    Job-level retries treat this as retryable.
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Provider '{provider}' is unavailable: {reason}", provider=provider)


class ProviderConfigError(ProviderError):
    """
    Raised when a provider is disabled or misconfigured.

    The chain skips it silently (debug log only).
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Provider '{provider}' is not configured: {reason}", provider=provider)


class SymbolNotFoundError(ProviderError):
    """
    Raised when a provider does not know the requested instrument.

    Another provider may still know it. NOT retryable against the same provider.
    """

    def __init__(self, symbol: str, provider: str) -> None:
        self.symbol = symbol
        super().__init__(f"Symbol '{symbol}' not found by {provider}", provider=provider)


class AllProvidersExhausted(ServiceError):
    """
    Raised when no provider could answer a request.

    Attributes:
        operation: The operation that was attempted
        symbol: The instrument the operation was for
        attempts: Every ProviderAttempt made, in order
    """

    def __init__(self, operation: str, symbol: str, attempts: list) -> None:
        self.operation = operation
        self.symbol = symbol
        self.attempts = list(attempts)
        failed = [a for a in self.attempts if a.error]
        if failed:
            detail = "; ".join(f"{a.provider}: {a.error}" for a in failed)
        else:
            detail = "no provider supports this request"
        super().__init__(f"All providers exhausted for {operation} '{symbol}' ({detail})")

    @property
    def is_transient(self) -> bool:
        """True when at least one failure was transient, so a later retry may succeed."""
        return any(a.outcome == "transient" for a in self.attempts)


# =============================================================================
# FX RATE ERRORS
# =============================================================================


class FXRateError(ServiceError):
    """
    Base exception for FX rate errors.

    Attributes:
        from_currency: Source currency code
        to_currency: Target currency code
    """

    def __init__(
            self,
            message: str,
            from_currency: str | None = None,
            to_currency: str | None = None,
    ) -> None:
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(message)


class NoRateAvailable(FXRateError):
    """
    Raised when no rate can be found for a pair on a date.

    Neither the cache (exact, inverse or within the lookback window) nor
    the provider chain could supply one.

    Attributes:
        date: The date for which rate was requested
    """

    def __init__(
            self,
            from_currency: str,
            to_currency: str,
            rate_date: date,
            message: str | None = None
    ) -> None:
        self.date = rate_date
        msg = message or f"No FX rate available for {from_currency}/{to_currency} on {rate_date}"
        super().__init__(msg, from_currency=from_currency, to_currency=to_currency)


# =============================================================================
# RECONCILIATION ERRORS
# =============================================================================


class ReconciliationError(ServiceError):
    """
    Base exception for transaction replay failures.

    These are data-integrity errors: the recompute cycle aborts and the
    error is recorded on the portfolio's recompute status.
    """

    def __init__(self, message: str, portfolio_id: int | None = None, asset_id: int | None = None) -> None:
        self.portfolio_id = portfolio_id
        self.asset_id = asset_id
        super().__init__(message)


class OversoldPosition(ReconciliationError):
    """
    Raised when a sell or transfer-out exceeds the quantity held at that point.

    Attributes:
        transaction_id: The offending transaction
        held: Quantity held just before it
        requested: Quantity it tried to remove
    """

    def __init__(
            self,
            portfolio_id: int,
            asset_id: int,
            transaction_id: int | None,
            held: Decimal,
            requested: Decimal,
    ) -> None:
        self.transaction_id = transaction_id
        self.held = held
        self.requested = requested
        super().__init__(
            f"Transaction {transaction_id} removes {requested} of asset {asset_id} "
            f"but portfolio {portfolio_id} holds only {held}",
            portfolio_id=portfolio_id,
            asset_id=asset_id,
        )


# =============================================================================
# CONCURRENCY
# =============================================================================


class StaleWrite(ServiceError):
    """
    Raised when a rebuild notices a newer generation was triggered.

    The rebuild rolls back; the newer cycle will write the result.
    """

    def __init__(self, portfolio_id: int, expected_generation: int, current_generation: int) -> None:
        self.portfolio_id = portfolio_id
        self.expected_generation = expected_generation
        self.current_generation = current_generation
        super().__init__(
            f"Rebuild of portfolio {portfolio_id} superseded: "
            f"generation {expected_generation} < {current_generation}"
        )


# =============================================================================
# CIRCUIT BREAKER (re-exported for convenience)
# =============================================================================

from valuation_engine.services.circuit_breaker import CircuitBreakerOpen

__all__ = [
    # Base
    "ServiceError",
    # Validation
    "ValidationError",
    # Not Found
    "NotFoundError",
    "PortfolioNotFoundError",
    "AssetNotFoundError",
    "TransactionNotFoundError",
    # Providers
    "ProviderError",
    "ProviderTransientError",
    "ProviderConfigError",
    "SymbolNotFoundError",
    "AllProvidersExhausted",
    # FX Rate
    "FXRateError",
    "NoRateAvailable",
    # Reconciliation
    "ReconciliationError",
    "OversoldPosition",
    # Concurrency
    "StaleWrite",
    # Circuit Breaker
    "CircuitBreakerOpen",
]
