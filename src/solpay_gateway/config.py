import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from .payments.addresses import is_valid_address
from .payments.assets import NATIVE_DECIMALS, NATIVE_SYMBOL, USDC_MINT, USDT_MINT, AssetInfo
from .payments.exceptions import ConfigError, ValidationError

CONFIG_PATH_ENV = "PAYMENT_GATEWAY_CONFIG"

DEFAULT_FEE_WALLET = "9E9ME8Xjrnnz5tyLqPWUbXVbPjXusEp9NdjKeugDjW5t"
DEFAULT_ICON_URL = "https://solana.com/src/img/branding/solanaLogoMark.svg"


@dataclass
class AssetConfig:
    symbol: str
    decimals: int
    mint: Optional[str] = None


@dataclass
class ServerConfig:
    listen_host: str = "0.0.0.0"
    listen_port: int = 3001
    base_url: str = "http://localhost:3001/api"
    icon_url: str = DEFAULT_ICON_URL
    name: str = "Solana Pay Gateway"


@dataclass
class SolanaConfig:
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"
    timeout_sec: float = 10.0
    max_retries: int = 3
    backoff_factor: float = 0.2


@dataclass
class FeeConfig:
    wallet: Optional[str] = DEFAULT_FEE_WALLET
    amount: Decimal = Decimal("1.0")
    asset: str = "USDC"

    @property
    def is_enabled(self) -> bool:
        return bool(self.wallet) and self.amount > 0


@dataclass
class SettlementConfig:
    session_ttl_sec: int = 30 * 60
    sweep_interval_sec: int = 5 * 60
    history_limit: int = 20
    native_tolerance_floor: int = 1000
    native_tolerance_ratio: Decimal = Decimal("0.01")
    verify_timeout_sec: float = 15.0


def _default_assets() -> List[AssetConfig]:
    return [
        AssetConfig(symbol=NATIVE_SYMBOL, decimals=NATIVE_DECIMALS, mint=None),
        AssetConfig(symbol="USDC", decimals=6, mint=USDC_MINT),
        AssetConfig(symbol="USDT", decimals=6, mint=USDT_MINT),
    ]


@dataclass
class GatewayConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    assets: List[AssetConfig] = field(default_factory=_default_assets)


def _load_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as config_fh:
        return json.load(config_fh)


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _number(convert, value: Any, name: str):
    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _parse_raw(raw: Dict[str, Any]) -> GatewayConfig:
    server_raw = raw.get("server", {}) or {}
    solana_raw = raw.get("solana", {}) or {}
    fees_raw = raw.get("fees", {}) or {}
    settlement_raw = raw.get("settlement", {}) or {}

    defaults = GatewayConfig()
    server = ServerConfig(
        listen_host=server_raw.get("listen_host", defaults.server.listen_host),
        listen_port=_number(int, server_raw.get("listen_port", defaults.server.listen_port), "listen_port"),
        base_url=server_raw.get("base_url", defaults.server.base_url),
        icon_url=server_raw.get("icon_url", defaults.server.icon_url),
        name=server_raw.get("name", defaults.server.name),
    )
    solana = SolanaConfig(
        rpc_url=solana_raw.get("rpc_url", defaults.solana.rpc_url),
        commitment=solana_raw.get("commitment", defaults.solana.commitment),
        timeout_sec=_number(float, solana_raw.get("timeout_sec", defaults.solana.timeout_sec), "timeout_sec"),
        max_retries=_number(int, solana_raw.get("max_retries", defaults.solana.max_retries), "max_retries"),
        backoff_factor=_number(
            float, solana_raw.get("backoff_factor", defaults.solana.backoff_factor), "backoff_factor"
        ),
    )
    fees = FeeConfig(
        wallet=fees_raw.get("wallet", defaults.fees.wallet),
        amount=_decimal(fees_raw.get("amount", defaults.fees.amount), "fees.amount"),
        asset=fees_raw.get("asset", defaults.fees.asset),
    )
    settlement = SettlementConfig(
        session_ttl_sec=_number(
            int, settlement_raw.get("session_ttl_sec", defaults.settlement.session_ttl_sec), "session_ttl_sec"
        ),
        sweep_interval_sec=_number(
            int,
            settlement_raw.get("sweep_interval_sec", defaults.settlement.sweep_interval_sec),
            "sweep_interval_sec",
        ),
        history_limit=_number(
            int, settlement_raw.get("history_limit", defaults.settlement.history_limit), "history_limit"
        ),
        native_tolerance_floor=_number(
            int,
            settlement_raw.get("native_tolerance_floor", defaults.settlement.native_tolerance_floor),
            "native_tolerance_floor",
        ),
        native_tolerance_ratio=_decimal(
            settlement_raw.get("native_tolerance_ratio", defaults.settlement.native_tolerance_ratio),
            "native_tolerance_ratio",
        ),
        verify_timeout_sec=_number(
            float,
            settlement_raw.get("verify_timeout_sec", defaults.settlement.verify_timeout_sec),
            "verify_timeout_sec",
        ),
    )

    assets = defaults.assets
    if raw.get("assets"):
        assets = [
            AssetConfig(
                symbol=asset_raw.get("symbol", ""),
                decimals=_number(int, asset_raw.get("decimals", 0), "decimals"),
                mint=asset_raw.get("mint"),
            )
            for asset_raw in raw["assets"]
        ]

    return GatewayConfig(
        server=server,
        solana=solana,
        fees=fees,
        settlement=settlement,
        assets=assets,
    )


def _apply_environment(config: GatewayConfig, environ: Mapping[str, str]) -> None:
    if environ.get("HOST"):
        config.server.listen_host = environ["HOST"]
    if environ.get("PORT"):
        config.server.listen_port = _number(int, environ["PORT"], "PORT")
    if environ.get("BASE_URL"):
        config.server.base_url = environ["BASE_URL"]
    if environ.get("SOLANA_RPC"):
        config.solana.rpc_url = environ["SOLANA_RPC"]
    if environ.get("SOLANA_COMMITMENT"):
        config.solana.commitment = environ["SOLANA_COMMITMENT"]
    if "FEE_WALLET" in environ:
        config.fees.wallet = environ["FEE_WALLET"] or None
    if environ.get("FEE_AMOUNT"):
        config.fees.amount = _decimal(environ["FEE_AMOUNT"], "FEE_AMOUNT")
    if environ.get("FEE_TOKEN"):
        config.fees.asset = environ["FEE_TOKEN"]


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GatewayConfig:
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_PATH_ENV)

    if path:
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Configuration file does not exist: {path}")
        try:
            raw = _load_json(path)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Failed to decode configuration at {path}: {exc}") from exc
        config = _parse_raw(raw)
    else:
        config = GatewayConfig()

    _apply_environment(config, environ)
    return config


def validate_config(config: GatewayConfig) -> None:
    symbols = set()
    for asset in config.assets:
        if not asset.symbol:
            raise ConfigError("Asset symbol must not be empty")
        if asset.symbol in symbols:
            raise ConfigError(f"Duplicate asset symbol: {asset.symbol}")
        symbols.add(asset.symbol)
        if not 0 <= asset.decimals <= 18:
            raise ConfigError(f"Asset {asset.symbol} decimals out of range: {asset.decimals}")
        if asset.mint is not None and not is_valid_address(asset.mint):
            raise ConfigError(f"Asset {asset.symbol} mint is not a valid address")

    fees = config.fees
    if fees.amount < 0:
        raise ConfigError("Fee amount must not be negative")
    if fees.wallet and not is_valid_address(fees.wallet):
        raise ConfigError("FEE_WALLET is not a valid Solana address")
    if fees.is_enabled:
        fee_asset = next((asset for asset in config.assets if asset.symbol == fees.asset), None)
        if fee_asset is None:
            raise ConfigError(f"Fee token is not a supported asset: {fees.asset}")
        try:
            AssetInfo(fee_asset.symbol, fee_asset.decimals, fee_asset.mint).checked_minor_units(fees.amount)
        except ValidationError as exc:
            raise ConfigError(f"Invalid fee amount: {exc}") from exc

    settlement = config.settlement
    if settlement.session_ttl_sec <= 0:
        raise ConfigError("session_ttl_sec must be positive")
    if settlement.sweep_interval_sec <= 0:
        raise ConfigError("sweep_interval_sec must be positive")
    if settlement.history_limit <= 0:
        raise ConfigError("history_limit must be positive")
    if settlement.native_tolerance_floor < 0 or settlement.native_tolerance_ratio < 0:
        raise ConfigError("Native tolerance must not be negative")
