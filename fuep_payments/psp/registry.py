"""
Provider registry.

Holds the adapters built from configuration and answers "which gateway do we
use". The registry is a plain value owned by the application (``app.state``)
and handed to the payment service; there is no module-level instance.
"""
from typing import Dict, Iterable, List, Optional

from fuep_payments.logging_config import get_logger

from .adapter import PSPAdapter, PSPProvider
from .flutterwave_adapter import FlutterwaveAdapter
from .mock_adapter import MockAdapter
from .remita_adapter import RemitaAdapter

logger = get_logger(__name__)

ADAPTER_FACTORIES = {
    PSPProvider.REMITA.value: RemitaAdapter.from_settings,
    PSPProvider.FLUTTERWAVE.value: FlutterwaveAdapter.from_settings,
}


class ProviderRegistry:
    def __init__(self):
        self._adapters: Dict[str, PSPAdapter] = {}
        self._primary: Optional[str] = None

    def register(self, adapter: PSPAdapter) -> None:
        """Register an adapter; the first enabled one becomes primary."""
        name = adapter.provider_name.lower()
        self._adapters[name] = adapter
        if self._primary is None and adapter.enabled:
            self._primary = name

    def get_primary(self) -> Optional[PSPAdapter]:
        if self._primary is None:
            return None
        adapter = self._adapters[self._primary]
        return adapter if adapter.enabled else None

    def get_by_name(self, name: str) -> Optional[PSPAdapter]:
        return self._adapters.get((name or "").lower())

    def get_enabled(self) -> List[PSPAdapter]:
        return [a for a in self._adapters.values() if a.enabled]

    def get_by_preference(self, names: Optional[Iterable[str]] = None) -> Optional[PSPAdapter]:
        """First enabled adapter in ``names``, else the primary, else any enabled one."""
        for name in names or []:
            adapter = self.get_by_name(name)
            if adapter is not None and adapter.enabled:
                return adapter
        primary = self.get_primary()
        if primary is not None:
            return primary
        enabled = self.get_enabled()
        return enabled[0] if enabled else None

    def has_available(self) -> bool:
        return bool(self.get_enabled())

    def status(self) -> Dict[str, Dict[str, bool]]:
        return {
            adapter.provider_name: {"enabled": adapter.enabled, "is_primary": name == self._primary}
            for name, adapter in self._adapters.items()
        }

    def __contains__(self, name: str) -> bool:
        return self.get_by_name(name) is not None

    def __len__(self) -> int:
        return len(self._adapters)


def build_registry(settings, client=None) -> ProviderRegistry:
    """
    Build adapters in PAYMENT_PROVIDERS order and register them.

    The mock gateway is only registered when no real gateway is enabled and
    ALLOW_MOCK_PROVIDER is on.
    """
    registry = ProviderRegistry()
    for name in settings.provider_order:
        factory = ADAPTER_FACTORIES.get(name)
        if factory is None:
            logger.warning("payment_provider_unknown", provider=name)
            continue
        registry.register(factory(settings, client=client))

    if not registry.has_available() and settings.ALLOW_MOCK_PROVIDER:
        registry.register(MockAdapter.from_settings(settings, client=client))
        logger.warning("payment_provider_mock_enabled")

    logger.info("payment_providers_configured", providers=registry.status())
    if not registry.has_available():
        logger.error("payment_providers_unavailable")
    return registry
