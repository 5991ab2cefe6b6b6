"""Site settings storage for storefront."""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import PersistenceError, ValidationError
from .store import data_dir_from_env

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"


@dataclass
class Currency:
    code: str = "USD"
    symbol: str = "$"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "symbol": self.symbol}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Currency":
        return cls(code=data.get("code", "USD"), symbol=data.get("symbol", "$"))


@dataclass
class SiteSettings:
    """Checkout-relevant site configuration."""

    currency: Currency = field(default_factory=Currency)
    free_shipping_threshold: float = 100.0
    flat_shipping_fee: float = 9.99
    cancellation_window_hours: int = 24

    def shipping_for(self, subtotal: float) -> float:
        return 0.0 if subtotal >= self.free_shipping_threshold else self.flat_shipping_fee

    def to_dict(self) -> dict[str, Any]:
        return {
            "currency": self.currency.to_dict(),
            "free_shipping_threshold": self.free_shipping_threshold,
            "flat_shipping_fee": self.flat_shipping_fee,
            "cancellation_window_hours": self.cancellation_window_hours,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SiteSettings":
        """Merge stored values over the defaults."""
        defaults = cls()
        return cls(
            currency=Currency.from_dict(data.get("currency", {})),
            free_shipping_threshold=float(
                data.get("free_shipping_threshold", defaults.free_shipping_threshold)
            ),
            flat_shipping_fee=float(data.get("flat_shipping_fee", defaults.flat_shipping_fee)),
            cancellation_window_hours=int(
                data.get("cancellation_window_hours", defaults.cancellation_window_hours)
            ),
        )


class SettingsStore:
    """Manages reading and writing site settings."""

    def __init__(self, data_dir: Path | None = None):
        """
        Initialize SettingsStore.

        Args:
            data_dir: Override data directory (for testing).
        """
        self.data_dir = Path(data_dir) if data_dir else data_dir_from_env()
        self.path = self.data_dir / SETTINGS_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SiteSettings:
        """Load settings from disk, falling back to defaults when none are saved."""
        if not self.exists():
            return SiteSettings()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError("load_settings", str(e)) from e
        return SiteSettings.from_dict(data)

    def save(self, settings: SiteSettings) -> None:
        """
        Save settings to disk atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".settings_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(settings.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise PersistenceError("save_settings", str(e)) from e


_UPDATABLE = {f.name for f in fields(SiteSettings)}


class SettingsCache:
    """
    Loaded-once view of the site settings.

    There is no expiry: ``update()`` writes through and invalidates, and
    anything else that edits the file must call ``invalidate()``.
    """

    def __init__(self, store: SettingsStore):
        self.store = store
        self._settings: SiteSettings | None = None
        self._lock = threading.Lock()

    def get(self) -> SiteSettings:
        with self._lock:
            if self._settings is None:
                self._settings = self.store.load()
            return self._settings

    def invalidate(self) -> None:
        with self._lock:
            self._settings = None

    def update(self, **changes: Any) -> SiteSettings:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        data = self.store.load().to_dict()
        for key, value in changes.items():
            if value is None:
                continue
            if key == "currency" and isinstance(value, Currency):
                value = value.to_dict()
            data[key] = value

        settings = SiteSettings.from_dict(data)
        if settings.free_shipping_threshold < 0 or settings.flat_shipping_fee < 0:
            raise ValidationError("Shipping amounts cannot be negative")

        self.store.save(settings)
        self.invalidate()
        logger.info("Site settings updated: %s", ", ".join(sorted(changes)))
        return self.get()
