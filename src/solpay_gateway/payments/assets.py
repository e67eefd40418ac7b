"""
Supported assets, their decimal precision and on-chain mint.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation, Overflow
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .exceptions import ValidationError

NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9
LAMPORTS_PER_SOL = 10 ** NATIVE_DECIMALS
# Transfer amounts are u64 on-chain.
MAX_MINOR_UNITS = 2 ** 64 - 1

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


@dataclass(frozen=True)
class AssetInfo:
    symbol: str
    decimals: int
    mint: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.mint is None

    def to_minor_units(self, amount: Decimal) -> int:
        return to_minor_units(amount, self.decimals)

    def checked_minor_units(self, amount: Decimal) -> int:
        """
        Minor units for ``amount``, rejecting values that floor to zero or do
        not fit an on-chain transfer.
        """
        try:
            minor_units = self.to_minor_units(amount)
        except Overflow as exc:
            raise ValidationError(
                f"Amount exceeds the largest transferable {self.symbol} value"
            ) from exc
        if minor_units <= 0:
            raise ValidationError(
                f"Amount is below the smallest transferable unit of {self.symbol}"
            )
        if minor_units > MAX_MINOR_UNITS:
            raise ValidationError(f"Amount exceeds the largest transferable {self.symbol} value")
        return minor_units


def to_minor_units(amount: Decimal, decimals: int) -> int:
    """
    Convert a whole-unit amount to integer minor units, rounding toward zero
    so the result never exceeds ``amount``.
    """
    scaled = Decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Invalid amount")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


class AssetRegistry:
    def __init__(self, assets: Iterable[AssetInfo]) -> None:
        self._assets: Dict[str, AssetInfo] = {}
        for asset in assets:
            if asset.symbol in self._assets:
                raise ValueError(f"Duplicate asset symbol: {asset.symbol}")
            self._assets[asset.symbol] = asset

    @classmethod
    def default(cls) -> "AssetRegistry":
        return cls(
            [
                AssetInfo(NATIVE_SYMBOL, NATIVE_DECIMALS),
                AssetInfo("USDC", 6, USDC_MINT),
                AssetInfo("USDT", 6, USDT_MINT),
            ]
        )

    @classmethod
    def from_config(cls, assets) -> "AssetRegistry":
        return cls(AssetInfo(item.symbol, item.decimals, item.mint) for item in assets)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._assets

    def __iter__(self) -> Iterator[AssetInfo]:
        return iter(self._assets.values())

    def is_supported(self, symbol: str) -> bool:
        return symbol in self._assets

    def get(self, symbol: str) -> AssetInfo:
        try:
            return self._assets[symbol]
        except KeyError as exc:
            raise ValidationError(f"Token not supported: {symbol}") from exc

    def symbols(self) -> List[str]:
        return list(self._assets)
