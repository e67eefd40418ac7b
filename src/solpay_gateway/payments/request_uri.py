"""
Solana Pay request URIs for wallets.

Transaction requests point the wallet at the gateway's transaction endpoint,
which answers with display metadata (GET) and an unsigned transaction (POST).
Transfer requests describe the payment inline for wallets that only
understand the simpler form.
"""

from decimal import Decimal
from typing import Dict
from urllib.parse import quote, urlencode

from .assets import AssetRegistry
from .models import PaymentSession

SCHEME = "solana"


def transaction_endpoint(base_url: str, session_id: str) -> str:
    return f"{base_url.rstrip('/')}/payment/{quote(session_id, safe='')}/transaction"


def transaction_request_uri(base_url: str, session_id: str) -> str:
    link = transaction_endpoint(base_url, session_id)
    if "?" in link:
        link = quote(link, safe="")
    return f"{SCHEME}:{link}"


def _format_amount(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def transfer_request_uri(session: PaymentSession, registry: AssetRegistry) -> str:
    asset = registry.get(session.asset)
    params: Dict[str, str] = {"amount": _format_amount(session.amount)}
    if not asset.is_native:
        params["spl-token"] = asset.mint
    if session.label:
        params["label"] = session.label
    if session.message:
        params["message"] = session.message
    return f"{SCHEME}:{session.recipient}?{urlencode(params, quote_via=quote)}"
