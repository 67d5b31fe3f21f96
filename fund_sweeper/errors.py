from __future__ import annotations


class SweepError(Exception):
    """Base class for every error raised by the sweeper."""


class KeyDerivationError(SweepError):
    """The signing keypair could not be derived from the supplied secret."""


class InvalidAddressError(SweepError):
    pass


class InsufficientFundsError(SweepError):
    """The observed balance does not cover the transfer (native: fee reserve)."""

    def __init__(self, observed: int, reserve: int = 0):
        self.observed = observed
        self.reserve = reserve
        super().__init__(f"Balance {observed} does not cover fee reserve {reserve}")


class SubmissionError(SweepError):
    """The gateway rejected or failed to broadcast a transaction."""


class ConfirmationTimeoutError(SweepError):
    """Confirmation polling kept failing after every attempt."""

    def __init__(self, signature: str, attempts: int):
        self.signature = signature
        self.attempts = attempts
        super().__init__(f"Confirmation of {signature} failed after {attempts} attempt(s)")


class NotFoundError(SweepError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Monitoring not found for {address}")


class AlreadyMonitoringError(SweepError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Already monitoring {address}")
