import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from . import __version__
from .config import FeeConfig, GatewayConfig
from .payments import PaymentService

_LOGGER = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _fee_snapshot(fees: FeeConfig) -> Optional[Dict[str, object]]:
    if not fees.is_enabled:
        return None

    return {
        "wallet": fees.wallet,
        "amount": str(fees.amount),
        "asset": fees.asset,
    }


def _asset_entries(config: GatewayConfig) -> List[Dict[str, object]]:
    return [
        {
            "symbol": asset.symbol,
            "decimals": asset.decimals,
            "mint": asset.mint,
        }
        for asset in config.assets
    ]


def get_health_status(config: GatewayConfig, service: PaymentService) -> Dict[str, object]:
    try:
        stats: Optional[Dict[str, int]] = service.stats()
    except Exception as exc:  # pylint: disable=broad-except
        _LOGGER.error("Failed to collect payment stats: %s", exc)
        stats = None

    return {
        "name": config.server.name,
        "status": "running",
        "timestamp": _timestamp(),
        "version": __version__,
        "baseUrl": config.server.base_url,
        "fee": _fee_snapshot(config.fees),
        "assets": _asset_entries(config),
        "payments": stats,
    }


def get_api_test_status(service: PaymentService) -> Dict[str, object]:
    return {
        "success": True,
        "message": "Payment gateway operational",
        "timestamp": _timestamp(),
        "supported_tokens": service.supported_assets(),
    }
