"""Instrument registry built from the [instruments.<SYMBOL>] config sections."""

from typing import Iterable, Optional

from meridian.core.config import ConfigManager
from meridian.core.retry import ValidationError
from meridian.domain.allocation import InstrumentRef


class InstrumentRegistry:
    """Maps trading symbols to ledger instrument identifiers."""

    def __init__(self, instruments: Iterable[InstrumentRef] = ()) -> None:
        self._by_symbol: dict[str, InstrumentRef] = {}
        for instrument in instruments:
            self.register(instrument)

    @classmethod
    def from_config(cls, config: ConfigManager) -> "InstrumentRegistry":
        """Read every [instruments.<SYMBOL>] table; ``id`` defaults to the symbol."""
        registry = cls()
        for symbol, section in config.get_section("instruments").items():
            if not isinstance(section, dict):
                continue
            admin = section.get("admin", "")
            if not admin:
                raise ValidationError(f"instruments.{symbol}.admin is required")
            registry.register(
                InstrumentRef(symbol=symbol, id=section.get("id", symbol), admin=admin)
            )
        return registry

    def register(self, instrument: InstrumentRef) -> None:
        self._by_symbol[instrument.symbol] = instrument

    def find(self, symbol: str) -> Optional[InstrumentRef]:
        return self._by_symbol.get(symbol)

    def get(self, symbol: str) -> InstrumentRef:
        """Instrument for ``symbol``.

        Raises:
            ValidationError: If the symbol is not configured.
        """
        instrument = self._by_symbol.get(symbol)
        if instrument is None:
            raise ValidationError(f"unknown instrument {symbol!r}")
        return instrument

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._by_symbol

    def __len__(self) -> int:
        return len(self._by_symbol)

    @property
    def symbols(self) -> list[str]:
        return sorted(self._by_symbol)
