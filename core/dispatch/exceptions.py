"""Custom exception classes for the dispatch decision engine.

Only ``InputError`` is allowed to abort a planning cycle. Strategy and plugin
errors are isolated to a single strategy and block, and safety violations are
recorded by the governor rather than raised to the caller.
"""


class DispatchException(Exception):
    """Base exception for all dispatch engine components."""

    pass


class InputError(DispatchException):
    """Raised when price or forecast input cannot be used for planning."""

    def __init__(self, message=None, context=None):
        if message is None:
            message = "Planning input is unusable"
        super().__init__(message)
        self.context = context or {}


class InvalidPriceDataError(InputError):
    """Raised when a price series is unsorted, overlapping or has gaps."""

    def __init__(self, index=None, message=None):
        if message is None:
            if index is not None:
                message = f"Malformed price data at point {index}"
            else:
                message = "Malformed price data"
        super().__init__(message, context={"index": index})
        self.index = index


class InsufficientDataError(InputError):
    """Raised when less than one full scheduling block of data is available."""

    def __init__(self, available_minutes=None, required_minutes=None, message=None):
        if message is None:
            if available_minutes is not None and required_minutes is not None:
                message = (
                    f"Only {available_minutes:.0f} minutes of data available, "
                    f"need at least {required_minutes:.0f}"
                )
            else:
                message = "Insufficient price data for planning"
        super().__init__(
            message,
            context={
                "available_minutes": available_minutes,
                "required_minutes": required_minutes,
            },
        )
        self.available_minutes = available_minutes
        self.required_minutes = required_minutes


class StrategyError(DispatchException):
    """Raised when a strategy fails to produce a decision for one block."""

    def __init__(self, strategy_name=None, block_start=None, message=None):
        if message is None:
            if strategy_name:
                message = f"Strategy {strategy_name} failed"
            else:
                message = "Strategy evaluation failed"
            if block_start is not None:
                message += f" for block {block_start.isoformat()}"
        super().__init__(message)
        self.strategy_name = strategy_name
        self.block_start = block_start


class StrategyTimeout(StrategyError):
    """Raised when a strategy misses its per-call deadline."""

    def __init__(self, strategy_name=None, block_start=None, timeout=None, message=None):
        if message is None and timeout is not None:
            message = f"Strategy {strategy_name} timed out after {timeout:.1f}s"
            if block_start is not None:
                message += f" for block {block_start.isoformat()}"
        super().__init__(strategy_name, block_start, message)
        self.timeout = timeout


class PluginProtocolError(StrategyError):
    """Raised when an external plugin returns a malformed or mismatched response."""

    def __init__(self, strategy_name=None, block_start=None, message=None):
        if message is None:
            message = f"Plugin {strategy_name} returned an invalid response"
        super().__init__(strategy_name, block_start, message)


class SafetyViolation(DispatchException):
    """A decision that cannot be executed safely on an inverter.

    The governor records these in the audit trail and holds the prior mode.
    """

    def __init__(self, inverter_id=None, mode=None, constraint=None, message=None):
        if message is None:
            mode_name = getattr(mode, "value", mode)
            message = f"{mode_name} rejected on {inverter_id}: {constraint}"
        super().__init__(message)
        self.inverter_id = inverter_id
        self.mode = mode
        self.constraint = constraint


class SystemConfigurationError(DispatchException):
    """Raised when there are configuration or system setup issues."""

    def __init__(self, component=None, message=None):
        if message is None:
            if component:
                message = f"Configuration error in {component}"
            else:
                message = "System configuration error"
        super().__init__(message)
        self.component = component


class PluginRegistrationError(DispatchException):
    """Raised when an external plugin registration request is invalid."""

    def __init__(self, name=None, message=None):
        if message is None:
            message = f"Invalid registration for plugin {name!r}"
        super().__init__(message)
        self.name = name
