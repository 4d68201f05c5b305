"""Core configuration values and types for the dispatch engine using dataclasses."""

from dataclasses import dataclass, field, fields
from typing import Any

from .exceptions import SystemConfigurationError

# Battery defaults
BATTERY_CAPACITY_KWH = 10.0
BATTERY_MAX_CHARGE_RATE_KW = 5.0
BATTERY_MAX_DISCHARGE_RATE_KW = 5.0
BATTERY_EFFICIENCY = 0.95  # round trip, applied on the charging leg
BATTERY_HARDWARE_MIN_SOC = 5.0  # percentage, absolute floor
BATTERY_MIN_SOC = 10.0  # percentage
BATTERY_MAX_SOC = 100.0  # percentage
BATTERY_WEAR_COST_PER_KWH = 0.125

# Strategy defaults
FORCE_CHARGE_HOURS = 2.0
FORCE_DISCHARGE_HOURS = 2.0
CHARGE_PERCENTILE = 25.0
DISCHARGE_PERCENTILE = 75.0
VOLATILE_CHARGE_PERCENTILE = 10.0
VOLATILE_DISCHARGE_PERCENTILE = 90.0
MIN_SPREAD = 0.15  # currency/kWh after efficiency and wear
PEAK_MIN_SPREAD = 0.5
VOLATILITY_CV_THRESHOLD = 0.35
FLAT_CV_THRESHOLD = 0.15
AVERAGE_HOUSEHOLD_LOAD_KW = 0.5
SOLAR_BLOCK_THRESHOLD_KWH = 0.2
SOLAR_DEFERRAL_HOURS = 3.0
MIN_SOLAR_COVERAGE = 0.5
RESERVE_SOC = 20.0

# Governor defaults
MIN_MODE_CHANGE_INTERVAL_SECS = 300
MIN_CONSECUTIVE_BLOCKS = 2
CHARGE_HEADROOM_PERCENT = 5.0

# Plugin defaults
PLUGIN_TIMEOUT_SECONDS = 5.0
PLUGIN_MAX_FAILURES = 3
PLUGIN_MAX_WORKERS = 8

# Health defaults
SOFT_STALE_MINUTES = 120
HARD_STALE_MINUTES = 360

# Cycle defaults
CYCLE_INTERVAL_SECONDS = 60
PRICE_POLL_SECONDS = 30
BLOCK_MINUTES = 15

INVERTER_ROLES = ["independent", "master", "slave"]


def _section_update(target, section: dict) -> None:
    """Apply known keys of a config section to a settings dataclass."""
    known = {f.name for f in fields(target) if f.init}
    for key, value in section.items():
        if key in known:
            setattr(target, key, value)


@dataclass
class BatterySettings:
    """Battery model supplied at cycle start. Treated as immutable for a cycle."""

    capacity_kwh: float = BATTERY_CAPACITY_KWH
    max_charge_rate_kw: float = BATTERY_MAX_CHARGE_RATE_KW
    max_discharge_rate_kw: float = BATTERY_MAX_DISCHARGE_RATE_KW
    efficiency: float = BATTERY_EFFICIENCY
    hardware_min_soc: float = BATTERY_HARDWARE_MIN_SOC  # percentage
    min_soc: float = BATTERY_MIN_SOC  # percentage
    max_soc: float = BATTERY_MAX_SOC  # percentage
    wear_cost_per_kwh: float = BATTERY_WEAR_COST_PER_KWH
    min_soc_kwh: float = field(init=False)
    max_soc_kwh: float = field(init=False)

    def __post_init__(self):
        self.validate()
        self.min_soc_kwh = self.capacity_kwh * self.min_soc / 100.0
        self.max_soc_kwh = self.capacity_kwh * self.max_soc / 100.0

    def validate(self) -> None:
        if self.capacity_kwh <= 0:
            raise SystemConfigurationError(
                "battery", f"capacity_kwh must be positive, got {self.capacity_kwh}"
            )
        if self.max_charge_rate_kw < 0 or self.max_discharge_rate_kw < 0:
            raise SystemConfigurationError("battery", "Rate limits must be >= 0")
        if not 0 < self.efficiency <= 1:
            raise SystemConfigurationError(
                "battery", f"efficiency must be in (0, 1], got {self.efficiency}"
            )
        if not (
            0 <= self.hardware_min_soc <= self.min_soc <= self.max_soc <= 100
        ):
            raise SystemConfigurationError(
                "battery",
                "SOC bounds must satisfy 0 <= hardware_min_soc <= min_soc <= max_soc <= 100, "
                f"got {self.hardware_min_soc}/{self.min_soc}/{self.max_soc}",
            )

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

        self.__post_init__()

    def from_config(self, config: dict) -> "BatterySettings":
        if "battery" in config:
            _section_update(self, config["battery"])
            self.__post_init__()
        return self

    def soc_to_kwh(self, soc_percent: float) -> float:
        return self.capacity_kwh * soc_percent / 100.0

    def kwh_to_soc(self, energy_kwh: float) -> float:
        return energy_kwh / self.capacity_kwh * 100.0


@dataclass
class StrategySettings:
    """Parameters shared by the built-in strategies and the day profile."""

    force_charge_hours: float = FORCE_CHARGE_HOURS
    force_discharge_hours: float = FORCE_DISCHARGE_HOURS
    charge_percentile: float = CHARGE_PERCENTILE
    discharge_percentile: float = DISCHARGE_PERCENTILE
    volatile_charge_percentile: float = VOLATILE_CHARGE_PERCENTILE
    volatile_discharge_percentile: float = VOLATILE_DISCHARGE_PERCENTILE
    min_spread: float = MIN_SPREAD
    peak_min_spread: float = PEAK_MIN_SPREAD
    volatility_cv_threshold: float = VOLATILITY_CV_THRESHOLD
    flat_cv_threshold: float = FLAT_CV_THRESHOLD
    average_household_load_kw: float = AVERAGE_HOUSEHOLD_LOAD_KW
    solar_block_threshold_kwh: float = SOLAR_BLOCK_THRESHOLD_KWH
    deferral_hours: float = SOLAR_DEFERRAL_HOURS
    min_solar_coverage: float = MIN_SOLAR_COVERAGE
    reserve_soc: float = RESERVE_SOC

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def from_config(self, config: dict) -> "StrategySettings":
        if "strategy" in config:
            _section_update(self, config["strategy"])
        if self.force_charge_hours < 0 or self.force_discharge_hours < 0:
            raise SystemConfigurationError(
                "strategy", "force_charge_hours and force_discharge_hours must be >= 0"
            )
        return self


@dataclass
class GovernorSettings:
    """Hardware guardrails applied before a mode change reaches an inverter."""

    min_mode_change_interval_secs: int = MIN_MODE_CHANGE_INTERVAL_SECS
    min_consecutive_blocks: int = MIN_CONSECUTIVE_BLOCKS
    charge_headroom_percent: float = CHARGE_HEADROOM_PERCENT

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def from_config(self, config: dict) -> "GovernorSettings":
        if "governor" in config:
            _section_update(self, config["governor"])
        if self.min_consecutive_blocks < 1:
            raise SystemConfigurationError(
                "governor", "min_consecutive_blocks must be at least 1"
            )
        return self


@dataclass
class PluginSettings:
    """Call lifecycle limits for external strategy plugins."""

    timeout_seconds: float = PLUGIN_TIMEOUT_SECONDS
    max_failures: int = PLUGIN_MAX_FAILURES
    max_workers: int = PLUGIN_MAX_WORKERS

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def from_config(self, config: dict) -> "PluginSettings":
        if "plugins" in config:
            _section_update(self, config["plugins"])
        if self.timeout_seconds <= 0 or self.max_failures < 1:
            raise SystemConfigurationError(
                "plugins", "timeout_seconds must be > 0 and max_failures >= 1"
            )
        return self


@dataclass
class HealthSettings:
    """Price freshness thresholds driving SystemHealth."""

    soft_stale_minutes: float = SOFT_STALE_MINUTES
    hard_stale_minutes: float = HARD_STALE_MINUTES

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def from_config(self, config: dict) -> "HealthSettings":
        if "health" in config:
            _section_update(self, config["health"])
        if self.soft_stale_minutes > self.hard_stale_minutes:
            raise SystemConfigurationError(
                "health", "soft_stale_minutes must not exceed hard_stale_minutes"
            )
        return self


@dataclass
class CycleSettings:
    """Planning cadence."""

    interval_seconds: int = CYCLE_INTERVAL_SECONDS
    price_poll_seconds: int = PRICE_POLL_SECONDS
    block_minutes: int = BLOCK_MINUTES

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def from_config(self, config: dict) -> "CycleSettings":
        if "cycle" in config:
            _section_update(self, config["cycle"])
        if self.block_minutes <= 0 or 60 % self.block_minutes != 0:
            raise SystemConfigurationError(
                "cycle", f"block_minutes must divide an hour, got {self.block_minutes}"
            )
        return self


@dataclass
class InverterConfig:
    """One inverter the governor issues commands to."""

    id: str
    role: str = "independent"

    def __post_init__(self):
        if self.role not in INVERTER_ROLES:
            raise SystemConfigurationError(
                "inverters", f"Unknown inverter role {self.role!r} for {self.id}"
            )

    @property
    def receives_commands(self) -> bool:
        # Slaves follow their master
        return self.role != "slave"


@dataclass
class EngineSettings:
    """All engine settings bundled for one DecisionEngine."""

    battery: BatterySettings = field(default_factory=BatterySettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    governor: GovernorSettings = field(default_factory=GovernorSettings)
    plugins: PluginSettings = field(default_factory=PluginSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    cycle: CycleSettings = field(default_factory=CycleSettings)
    inverters: list[InverterConfig] = field(
        default_factory=lambda: [InverterConfig(id="inverter")]
    )

    @classmethod
    def from_config(cls, config: dict) -> "EngineSettings":
        """Create settings from an options dictionary, one section per dataclass."""
        settings = cls(
            battery=BatterySettings().from_config(config),
            strategy=StrategySettings().from_config(config),
            governor=GovernorSettings().from_config(config),
            plugins=PluginSettings().from_config(config),
            health=HealthSettings().from_config(config),
            cycle=CycleSettings().from_config(config),
        )
        if config.get("inverters"):
            settings.inverters = [
                InverterConfig(id=str(item["id"]), role=item.get("role", "independent"))
                for item in config["inverters"]
            ]
        masters = [i for i in settings.inverters if i.role == "master"]
        slaves = [i for i in settings.inverters if i.role == "slave"]
        if slaves and not masters:
            raise SystemConfigurationError(
                "inverters", "Slave inverters configured without a master"
            )
        return settings
