# backend/valuation_engine/services/providers/chain.py
"""
Provider chain: ordered failover over N unreliable market data sources.

Resolution algorithm (one call, no retries):
    for provider in configured order:
        skip if disabled/misconfigured (debug log)
        skip if the request is outside its capabilities
        call it under its circuit breaker, bounded by the timeout
            success              -> return
            transient failure    -> warning, next provider
            symbol unknown/other -> record, next provider
    raise AllProvidersExhausted(attempts)

Every attempt is logged and returned in the result, so callers can tell
which source answered and what failed before it.

Thread safety:
    The chain is shared by all recompute workers. Breakers are thread-safe
    and providers are stateless apart from their HTTP clients.

Timeouts:
    A timed-out call cannot be interrupted; its worker thread runs until the
    provider returns. Such calls are counted as stuck (executor_stats) and,
    once every call worker is stuck, further attempts fail fast as transient
    instead of queueing behind them.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from valuation_engine.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from valuation_engine.services.constants import CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS
from valuation_engine.services.exceptions import (
    AllProvidersExhausted,
    ProviderConfigError,
    ProviderError,
    ProviderTransientError,
    SymbolNotFoundError,
)
from valuation_engine.services.providers.base import (
    Instrument,
    MarketDataProvider,
    Operation,
    RANGED_OPERATIONS,
)

logger = logging.getLogger(__name__)


# Attempt outcomes
OUTCOME_SUCCESS = "success"
OUTCOME_TRANSIENT = "transient"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_ERROR = "error"
OUTCOME_DISABLED = "disabled"
OUTCOME_UNSUPPORTED = "unsupported"

FAILED_OUTCOMES = frozenset({OUTCOME_TRANSIENT, OUTCOME_NOT_FOUND, OUTCOME_ERROR})


@dataclass(frozen=True)
class ProviderChainConfig:
    """
    Explicit chain configuration.

    Attributes:
        order: Provider names in priority order
        disabled: Provider names to skip as misconfigured
        timeout_seconds: Bound on each provider call
        failure_threshold: Failures before a provider's breaker opens
        recovery_timeout: Seconds before an open breaker probes again
    """

    order: tuple[str, ...]
    disabled: frozenset[str] = frozenset()
    timeout_seconds: float = 10.0
    failure_threshold: int = 5
    recovery_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "ProviderChainConfig":
        return cls(
            order=tuple(settings.provider_order),
            disabled=frozenset(name.lower() for name in settings.disabled_providers),
            timeout_seconds=settings.provider_timeout_seconds,
            failure_threshold=settings.provider_failure_threshold,
            recovery_timeout=settings.provider_recovery_timeout,
        )


@dataclass(frozen=True)
class ProviderAttempt:
    """One provider's part in a resolution."""

    provider: str
    operation: str
    outcome: str
    error: str | None = None
    elapsed_ms: float = 0.0


@dataclass
class ProviderResult:
    """
    Successful resolution.

    Attributes:
        value: The provider's answer (bool, Quote, list[PricePoint], ...)
        provider: Name of the provider that answered
        attempts: All attempts in order, the winning one last
    """

    value: Any
    provider: str
    operation: Operation
    instrument: Instrument
    attempts: list[ProviderAttempt] = field(default_factory=list)

    @property
    def failed_attempts(self) -> list[ProviderAttempt]:
        return [a for a in self.attempts if a.outcome in FAILED_OUTCOMES]


class ProviderChain:
    """
    Tries providers in priority order until one answers.

    Example:
        chain = ProviderChain(
            [YahooFinanceProvider(), FrankfurterProvider(url)],
            ProviderChainConfig(order=("frankfurter", "yahoo")),
        )
        result = chain.resolve(Operation.HISTORY, Instrument.currency_pair("USD", "EUR"),
                               date(2024, 1, 1), date(2024, 1, 31))
    """

    def __init__(
            self,
            providers: list[MarketDataProvider],
            config: ProviderChainConfig,
            executor: ThreadPoolExecutor | None = None,
            max_workers: int | None = None,
    ) -> None:
        by_name = {p.name: p for p in providers}
        missing = [name for name in config.order if name not in by_name]
        if missing:
            raise ValueError(f"No provider instance for: {', '.join(missing)}")

        self._config = config
        self._providers: list[MarketDataProvider] = [by_name[name] for name in config.order]
        self._breakers: dict[str, CircuitBreaker] = {
            p.name: CircuitBreaker(
                name=p.name,
                failure_threshold=config.failure_threshold,
                recovery_timeout=config.recovery_timeout,
                half_open_max_calls=CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
                # An unknown symbol or a config problem says nothing about availability
                excluded_exceptions=(SymbolNotFoundError, ProviderConfigError),
            )
            for p in self._providers
        }
        self._owns_executor = executor is None
        # Size of an injected executor is the caller's concern
        self._max_workers = None
        if executor is None:
            self._max_workers = max_workers or max(4, len(self._providers) * 4)
            executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="provider-call")
        self._executor = executor
        self._stuck_calls = 0
        self._stuck_lock = threading.Lock()

        logger.info(
            f"Provider chain initialized: order={list(config.order)}, "
            f"disabled={sorted(config.disabled)}, timeout={config.timeout_seconds}s, "
            f"call_workers={self._max_workers}"
        )

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    def get_breaker(self, provider_name: str) -> CircuitBreaker:
        return self._breakers[provider_name]

    def breaker_states(self) -> list[dict]:
        return [self._breakers[p.name].snapshot() for p in self._providers]

    def executor_stats(self) -> dict:
        """Call worker usage: pool size and calls still running past their timeout."""
        with self._stuck_lock:
            return {"max_workers": self._max_workers, "stuck_calls": self._stuck_calls}

    def _saturated(self) -> bool:
        with self._stuck_lock:
            return self._max_workers is not None and self._stuck_calls >= self._max_workers

    def _track_stuck_call(self, future, provider_name: str) -> None:
        with self._stuck_lock:
            self._stuck_calls += 1
            stuck = self._stuck_calls
        logger.warning(
            f"Provider {provider_name} call still running after timeout; "
            f"{stuck}/{self._max_workers or '?'} call workers stuck"
        )

        def _release(_future) -> None:
            with self._stuck_lock:
                self._stuck_calls -= 1

        future.add_done_callback(_release)

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
            self,
            operation: Operation,
            instrument: Instrument,
            start_date: date | None = None,
            end_date: date | None = None,
    ) -> ProviderResult:
        """
        Resolve one request against the chain.

        For EXISTS, a provider answering False does not end the search: the
        next provider may know the instrument. If every answering provider
        says False, the result is False.

        Raises:
            AllProvidersExhausted: no provider answered
            ValueError: ranged operation without a date range
        """
        if operation in RANGED_OPERATIONS and (start_date is None or end_date is None):
            raise ValueError(f"{operation.value} requires start_date and end_date")

        attempts: list[ProviderAttempt] = []
        negative_answer: ProviderResult | None = None

        for provider in self._providers:
            attempt, value = self._attempt(provider, operation, instrument, start_date, end_date)
            attempts.append(attempt)

            if attempt.outcome != OUTCOME_SUCCESS:
                continue

            if operation == Operation.EXISTS and value is False:
                negative_answer = ProviderResult(False, provider.name, operation, instrument)
                attempts[-1] = ProviderAttempt(
                    provider=attempt.provider,
                    operation=attempt.operation,
                    outcome=OUTCOME_NOT_FOUND,
                    error=f"{instrument} unknown",
                    elapsed_ms=attempt.elapsed_ms,
                )
                continue

            return ProviderResult(value, provider.name, operation, instrument, attempts)

        if negative_answer is not None:
            negative_answer.attempts = attempts
            return negative_answer

        exhausted = AllProvidersExhausted(operation.value, str(instrument), attempts)
        logger.warning(str(exhausted))
        raise exhausted

    def _attempt(
            self,
            provider: MarketDataProvider,
            operation: Operation,
            instrument: Instrument,
            start_date: date | None,
            end_date: date | None,
    ) -> tuple[ProviderAttempt, Any]:
        """Run a single provider call and classify its outcome."""
        name = provider.name
        log_extra = {"provider": name, "operation": operation.value, "instrument": str(instrument)}

        if name in self._config.disabled:
            logger.debug(f"Provider {name} disabled, skipping {operation.value} '{instrument}'", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_DISABLED), None

        if not provider.capabilities.supports(operation, instrument):
            logger.debug(f"Provider {name} does not support {operation.value} '{instrument}'", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_UNSUPPORTED), None

        started = time.monotonic()

        def elapsed() -> float:
            return round((time.monotonic() - started) * 1000, 1)

        try:
            provider.check_configured()
            # Not the provider's fault, so outside its breaker
            if self._saturated():
                raise ProviderTransientError(name, "all provider call workers busy with timed-out calls")
            with self._breakers[name]:
                future = self._executor.submit(provider.call, operation, instrument, start_date, end_date)
                try:
                    value = future.result(timeout=self._config.timeout_seconds)
                except FutureTimeoutError:
                    if not future.cancel():
                        self._track_stuck_call(future, name)
                    raise ProviderTransientError(name, f"timed out after {self._config.timeout_seconds}s")

        except ProviderConfigError as e:
            logger.debug(f"Provider {name} not configured: {e}", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_DISABLED, None, elapsed()), None

        except CircuitBreakerOpen as e:
            logger.warning(f"Provider {name} skipped for {operation.value} '{instrument}': {e}", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_TRANSIENT, str(e), elapsed()), None

        except ProviderTransientError as e:
            logger.warning(
                f"Provider {name} failed transiently for {operation.value} '{instrument}': {e.reason}",
                extra=log_extra,
            )
            return ProviderAttempt(name, operation.value, OUTCOME_TRANSIENT, e.reason, elapsed()), None

        except SymbolNotFoundError as e:
            logger.info(f"Provider {name}: {e}", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_NOT_FOUND, str(e), elapsed()), None

        except ProviderError as e:
            logger.info(f"Provider {name} failed for {operation.value} '{instrument}': {e}", extra=log_extra)
            return ProviderAttempt(name, operation.value, OUTCOME_ERROR, str(e), elapsed()), None

        except Exception as e:
            # Provider bug or unexpected payload; the next provider may still answer
            logger.warning(
                f"Provider {name} raised {type(e).__name__} for {operation.value} '{instrument}': {e}",
                extra=log_extra,
            )
            return ProviderAttempt(name, operation.value, OUTCOME_ERROR, f"{type(e).__name__}: {e}", elapsed()), None

        logger.info(
            f"Provider {name} answered {operation.value} '{instrument}' in {elapsed()}ms",
            extra={**log_extra, "outcome": OUTCOME_SUCCESS},
        )
        return ProviderAttempt(name, operation.value, OUTCOME_SUCCESS, None, elapsed()), value

    def close(self) -> None:
        for provider in self._providers:
            provider.close()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
