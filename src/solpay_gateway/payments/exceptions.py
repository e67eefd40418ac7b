class GatewayError(Exception):
    """Base class for payment gateway errors."""


class ValidationError(GatewayError):
    """Raised when caller input is malformed (address, amount, asset)."""


class InvalidPayerError(ValidationError):
    """Raised when the payer account submitted by a wallet is not a valid address."""


class NotFoundError(GatewayError):
    """Raised when a payment session id is unknown."""


class ExpiredError(GatewayError):
    """Raised when a payment session has passed its payment window."""


class ConflictError(GatewayError):
    """Raised when a mutation targets a session in a terminal state."""


class ConfigError(GatewayError):
    """Raised when the supplied configuration is invalid."""


class LedgerError(GatewayError):
    """Base class for ledger access failures."""


class LedgerTransportError(LedgerError):
    """Raised when the Solana RPC endpoint cannot be reached or returns an error."""


class LedgerTimeoutError(LedgerTransportError):
    """Raised when a ledger call exceeds the caller-supplied timeout."""
