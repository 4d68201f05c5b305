"""Plugin gateway: registration and call lifecycle of external strategies.

External strategies are plain HTTP endpoints. ``HttpPluginStrategy`` adapts
one endpoint to the same ``evaluate`` signature the built-ins have, so the
merger treats both alike. Every call carries its own timeout; failures are
raised as StrategyError subclasses and the merger turns them into a
fallback decision and a strike against the plugin's failure budget.
"""

import logging

import requests

from .day_profile import DayProfile
from .exceptions import (
    PluginProtocolError,
    PluginRegistrationError,
    StrategyError,
    StrategyTimeout,
)
from .models import (
    BatteryState,
    HistoricalHints,
    ScheduleBlock,
    StrategyDecision,
)
from .plugin_protocol import decode_response, encode_request
from .settings import BatterySettings, PluginSettings
from .strategies.base import Strategy
from .strategy_registry import HandleKind, StrategyHandle, StrategyRegistry

logger = logging.getLogger(__name__)

DEFAULT_PLUGIN_PRIORITY = 50


def run_request(http_method, *args, **kwargs):
    """Log the request and response for debugging purposes."""
    try:
        logger.debug(
            "HTTP Method: %s", getattr(http_method, "__name__", "request").upper()
        )
        logger.debug("Request Args: %s", args)

        response = http_method(*args, **kwargs)

        logger.debug("Response Status Code: %s", response.status_code)
        logger.debug("Response Content: %s", response.text)

        return response
    except requests.RequestException as e:
        logger.debug("Error during HTTP request: %s", str(e))
        raise


class HttpPluginStrategy(Strategy):
    """Network adapter for one external plugin."""

    def __init__(
        self,
        name: str,
        callback_url: str,
        priority: int = DEFAULT_PLUGIN_PRIORITY,
        version: str = "1.0.0",
        timeout: float = 5.0,
    ):
        super().__init__()
        self.name = name
        self.version = version
        self.default_priority = priority
        self.callback_url = callback_url
        self.timeout = timeout
        self.historical = HistoricalHints()

    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        payload = encode_request(
            block, all_blocks, battery_state, battery, day_profile, self.historical
        )

        try:
            response = run_request(
                requests.post, self.callback_url, json=payload, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise StrategyTimeout(self.name, block.start_time, self.timeout) from e
        except requests.RequestException as e:
            raise StrategyError(
                self.name, block.start_time, f"Plugin {self.name} unreachable: {e}"
            ) from e

        if not 200 <= response.status_code < 300:
            raise StrategyError(
                self.name,
                block.start_time,
                f"Plugin {self.name} returned HTTP {response.status_code}",
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PluginProtocolError(
                self.name, block.start_time, f"Plugin {self.name} returned invalid JSON"
            ) from e

        return decode_response(body, block, self.name, self.default_priority)


def validate_registration(name: str, callback_url: str) -> None:
    """Reject empty names and non-HTTP callbacks.

    Raises:
        PluginRegistrationError: If the registration is invalid
    """
    if not isinstance(name, str):
        raise PluginRegistrationError(str(name), "Plugin name must be a string")
    if not isinstance(callback_url, str):
        raise PluginRegistrationError(name, "Callback URL must be a string")
    if not name.strip():
        raise PluginRegistrationError(name, "Plugin name cannot be empty")
    if not callback_url.strip():
        raise PluginRegistrationError(name, "Callback URL cannot be empty")
    if not callback_url.startswith(("http://", "https://")):
        raise PluginRegistrationError(
            name, "Callback URL must start with http:// or https://"
        )


class PluginGateway:
    """Manages external plugin handles on top of a StrategyRegistry."""

    def __init__(self, registry: StrategyRegistry, settings: PluginSettings | None = None):
        self.registry = registry
        self.settings = settings or PluginSettings()

    @staticmethod
    def plugin_id(name: str) -> str:
        return f"http:{name}"

    def register(
        self,
        name: str,
        callback_url: str,
        priority: int | None = None,
        version: str = "1.0.0",
        description: str = "",
    ) -> StrategyHandle:
        """Register or re-register an external plugin."""
        validate_registration(name, callback_url)
        name = name.strip()
        priority = DEFAULT_PLUGIN_PRIORITY if priority is None else priority

        adapter = HttpPluginStrategy(
            name=name,
            callback_url=callback_url,
            priority=priority,
            version=version,
            timeout=self.settings.timeout_seconds,
        )
        return self.registry.register_external(
            name, adapter, callback_url, priority, version, description
        )

    def _external(self, name: str) -> StrategyHandle:
        handle = self.registry.get(name)
        if handle.kind != HandleKind.EXTERNAL:
            raise KeyError(f"{name} is not an external plugin")
        return handle

    def unregister(self, name: str) -> None:
        self._external(name)
        self.registry.unregister(name)

    def enable(self, name: str) -> None:
        self._external(name)
        self.registry.enable(name)

    def set_priority(self, name: str, priority: int) -> None:
        handle = self._external(name)
        self.registry.set_priority(name, priority)
        handle.strategy.default_priority = priority

    def list_plugins(self) -> list[StrategyHandle]:
        return [h for h in self.registry.list_handles() if h.kind == HandleKind.EXTERNAL]

    def begin_cycle(self, historical: HistoricalHints) -> None:
        """Hand the cycle's historical hints to every adapter before dispatch."""
        for handle in self.list_plugins():
            handle.strategy.historical = historical

    def probe(
        self,
        name: str,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> bool:
        """Call a plugin once outside a cycle and re-enable it on success."""
        handle = self._external(name)
        try:
            decision = handle.strategy.evaluate(
                block, all_blocks, battery_state, battery, day_profile
            )
        except StrategyError as e:
            logger.warning(f"Probe of plugin {name} failed: {e}")
            self.registry.record_failure(name, e)
            return False

        self.registry.enable(name)
        self.registry.record_success(name, decision)
        logger.info(f"Probe of plugin {name} succeeded, plugin re-enabled")
        return True
