"""
Custom Exception Classes for the Sale Escrow

This module defines the exceptions raised by sale, registry, access gate and ledger
operations. Every failure is a rejected operation: the operation that raised left no
observable state change behind, so callers may inspect the message and decide whether
to try again.

Exception Categories:
- Authorization Errors: caller is not an admin, not the sale owner, or not a participant
- State Errors: operation is not allowed in the current sale phase
- Validation Errors: malformed input (null identities, zero amounts, bad schedules)
- Capacity Errors: the purchase does not fit the open round or the hard cap
- Funds Errors: a ledger debit exceeds the available balance or allowance
- Configuration Errors: invalid environment configuration

Usage:
    Catch SaleError to handle every rejected escrow operation in one place, or the
    specific subclasses where the caller needs to react differently.
"""


class SaleError(Exception):
    """Base class for every rejected escrow operation."""


class AuthorizationError(SaleError):
    """Raised when the caller lacks the role the operation requires."""


class StateError(SaleError):
    """Raised when the operation is not valid in the sale's current phase."""


class ValidationError(SaleError):
    """Raised when input validation fails."""


class CapacityError(SaleError):
    """Raised when a purchase does not fit the open round or the hard cap."""


class InsufficientFundsError(SaleError):
    """Raised when a ledger balance or allowance is too small for a debit."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""
