import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import find_dotenv, load_dotenv

# Configure module logger
logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings:
    """
    Runtime configuration read from environment variables

    A .env file found from the working directory upwards fills in any
    variable the process environment does not already set.

    Raises:
        ValueError: If a variable holds a value that cannot be parsed
    """

    def __init__(self):
        load_dotenv(find_dotenv(usecwd=True))

        self.logLevel: str = os.getenv("LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(self.logLevel), int):
            raise ValueError(f"Unknown LOG_LEVEL: {self.logLevel}")

        self.currencySymbol: str = os.getenv("CURRENCY_SYMBOL", "$")
        self.splitTolerance: Decimal = self._get_decimal("SPLIT_TOLERANCE", "0.01")
        self.reconcileRounding: bool = self._get_bool("RECONCILE_ROUNDING", True)
        self.storeLatency: float = float(self._get_decimal("STORE_LATENCY", "0"))

        logger.debug(
            f"Settings loaded: logLevel={self.logLevel}, tolerance={self.splitTolerance}, "
            f"reconcileRounding={self.reconcileRounding}"
        )

    @staticmethod
    def _get_decimal(name: str, default: str) -> Decimal:
        raw = os.getenv(name, default)
        try:
            value = Decimal(raw)
        except InvalidOperation:
            raise ValueError(f"{name} must be a decimal number, got {raw!r}")
        if value < 0:
            raise ValueError(f"{name} must not be negative, got {raw!r}")
        return value

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        if raw.strip().lower() in _TRUE_VALUES:
            return True
        if raw.strip().lower() in _FALSE_VALUES:
            return False
        raise ValueError(f"{name} must be a boolean, got {raw!r}")


_SETTINGS: Optional[Settings] = None


def getSettings() -> Settings:
    """Return the process-wide settings, loading them on first use"""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings()
    return _SETTINGS
