import json
import os
from contextlib import asynccontextmanager

import log_config  # noqa: F401
import requests
import yaml

# Import endpoints router
from api import router as endpoints_router
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv
from executor_client import ExecutorClient
from fastapi import FastAPI
from loguru import logger
from price_feed import PriceFeed

from core.dispatch import DecisionEngine, EngineSettings
from core.dispatch.decision_engine import CycleReport
from core.dispatch.exceptions import PluginRegistrationError

# Get ingress prefix from environment variable
INGRESS_PREFIX = os.environ.get("INGRESS_PREFIX", "")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for FastAPI app."""
    routes = []
    for route in app.routes:
        path = getattr(route, "path", "Unknown path")
        methods = getattr(route, "methods", None)
        routes.append(f"{path} - {methods}")
    logger.info(f"Registered routes: {routes}")

    dispatch_controller.start()

    yield

    dispatch_controller.stop()


# Create FastAPI app with correct root_path
app = FastAPI(root_path=INGRESS_PREFIX, lifespan=lifespan)


# Add global exception handler to prevent server restarts
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    import traceback

    from fastapi.responses import JSONResponse

    tb_str = traceback.format_exception(type(exc), exc, exc.__traceback__)
    error_msg = "".join(tb_str)

    logger.error(f"Unhandled exception: {exc!s}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{error_msg}")

    # Return a 500 response but keep the server running
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": str(type(exc).__name__),
            "message": "The server encountered an internal error but is still running.",
        },
    )


logger.info(f"Ingress prefix: {INGRESS_PREFIX}")

# Include the router from api.py
app.include_router(endpoints_router)


class DispatchController:
    def __init__(self):
        """Initialize the dispatch controller."""
        # Load environment variables
        load_dotenv(os.environ.get("DISPATCH_ENV_FILE", "/data/options.env"))

        options = self._load_options()
        if not options:
            logger.warning("No configuration options found, using defaults")
            options = {}
        self.options = options

        self.settings = EngineSettings.from_config(options)

        self.executor = self._init_executor(options.get("executor", {}))
        self.price_feed = self._init_price_feed(options.get("price_feed", {}))

        self.engine = DecisionEngine(
            self.settings, command_sink=self.executor.send_command
        )
        self.engine.register_builtins()
        self._register_configured_plugins(options.get("external_plugins", []))

        self._last_planned_version: str | None = None

        # One cycle at a time; a late cycle is coalesced, not queued
        self.scheduler = BackgroundScheduler(
            {
                "apscheduler.executors.default": {
                    "class": "apscheduler.executors.pool:ThreadPoolExecutor",
                    "max_workers": "4",
                },
                "apscheduler.job_defaults": {
                    "misfire_grace_time": 30,
                    "coalesce": True,
                    "max_instances": 1,
                },
            }
        )

        logger.info(
            f"Dispatch controller initialized with {len(self.settings.inverters)} "
            f"inverter(s), {self.settings.cycle.block_minutes}-minute blocks"
        )

    def _init_executor(self, executor_config: dict) -> ExecutorClient:
        url = os.environ.get("EXECUTOR_URL", executor_config.get("url", "http://localhost:8099"))
        token = os.environ.get("EXECUTOR_TOKEN", executor_config.get("token"))

        # Test mode defaults to False for production
        test_mode = os.environ.get("EXECUTOR_TEST_MODE", "false").lower() in (
            "true",
            "1",
            "yes",
        )
        if test_mode:
            logger.info("Enabling test mode - inverter commands will be logged only")

        return ExecutorClient(base_url=url, token=token, test_mode=test_mode)

    def _init_price_feed(self, feed_config: dict) -> PriceFeed:
        url = os.environ.get(
            "PRICE_FEED_URL", feed_config.get("url", "http://localhost:8098/api/snapshot")
        )
        return PriceFeed(
            url=url,
            timeout=feed_config.get("timeout", 10.0),
            token=os.environ.get("PRICE_FEED_TOKEN", feed_config.get("token")),
        )

    def _register_configured_plugins(self, plugins: list[dict]) -> None:
        """Register external plugins listed in the options file."""
        for plugin in plugins:
            try:
                self.engine.gateway.register(
                    name=plugin["name"],
                    callback_url=plugin["callback_url"],
                    priority=plugin.get("priority"),
                    version=plugin.get("version", "1.0.0"),
                    description=plugin.get("description", ""),
                )
            except (KeyError, PluginRegistrationError) as e:
                logger.error(f"Skipping configured plugin {plugin}: {e}")

    def _load_options(self):
        """Load options from the add-on options file or config.yaml."""

        options_json = os.environ.get("DISPATCH_OPTIONS_PATH", "/data/options.json")
        config_yaml = os.environ.get("DISPATCH_CONFIG_YAML", "/app/config.yaml")

        # First try the standard options.json (production)
        if os.path.exists(options_json):
            try:
                with open(options_json) as f:
                    options = json.load(f)
                    logger.info(f"Loaded options from {options_json}")
                    return options
            except Exception as e:
                logger.error(f"Error loading options from {options_json}: {e!s}")

        # If not available, try to load from config.yaml directly (development)
        if os.path.exists(config_yaml):
            try:
                with open(config_yaml) as f:
                    config = yaml.safe_load(f)

                if "options" in config:
                    options = config["options"]
                    logger.info(f"Loaded options from {config_yaml} (options section)")
                    return options

                logger.warning(
                    f"No 'options' section found in {config_yaml}, using entire file"
                )
                return config
            except Exception as e:
                logger.error(f"Error loading from {config_yaml}: {e!s}")

        return None

    def run_cycle(self) -> CycleReport:
        """Fetch the current snapshot and run one planning cycle."""
        return self._plan_and_publish(self.price_feed.fetch())

    def _plan_and_publish(self, cycle_input) -> CycleReport:
        report = self.engine.run_cycle(cycle_input)

        # An aborted cycle leaves the version unplanned so the poll retries it
        if report.published:
            self._last_planned_version = cycle_input.price_version
            try:
                self.executor.publish_schedule(report.schedule)
            except requests.RequestException as e:
                logger.error(f"Failed to publish schedule {report.cycle_id}: {e}")
        return report

    def check_price_version(self) -> None:
        """Replan as soon as the price source publishes a new version."""
        cycle_input = self.price_feed.fetch()
        version = self.price_feed.version()
        if version is None or version == self._last_planned_version:
            return

        logger.info(
            f"Price data changed ({self._last_planned_version} -> {version}), replanning"
        )
        self._plan_and_publish(cycle_input)

    def _init_scheduler_jobs(self):
        """Configure scheduler jobs."""
        self.scheduler.add_job(
            self.run_cycle,
            IntervalTrigger(seconds=self.settings.cycle.interval_seconds),
            id="planning_cycle",
        )
        self.scheduler.add_job(
            self.check_price_version,
            IntervalTrigger(seconds=self.settings.cycle.price_poll_seconds),
            id="price_version_poll",
        )
        self.scheduler.start()

    def start(self):
        """Run a first cycle and start the scheduler."""
        self.run_cycle()
        self._init_scheduler_jobs()
        logger.info("Scheduler started successfully")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


# Global dispatch controller instance
dispatch_controller = DispatchController()


# All API endpoints are found in api.py and are imported via the router
