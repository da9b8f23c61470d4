"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is already open.
  - A call whose own failure just tripped the circuit.
"""


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected or cut short because the circuit is open.

    Attributes:
        breaker_name: Service key of the breaker rejecting the call.
        retry_after: Seconds until the cool-down elapses.
        tripped: True when this call's failure opened the circuit.
    """

    def __init__(
        self,
        breaker_name: str,
        retry_after: float,
        *,
        tripped: bool = False,
    ) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after: Seconds until calls are attempted again.
            tripped: Whether the failure being handled opened the circuit.
        """
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        self.tripped = tripped
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")
