"""
Solana Pay payment-request gateway: REST surface over the settlement core.
"""

__version__ = "1.0.0"

from .server import PaymentGatewayServer  # noqa: F401,E402
