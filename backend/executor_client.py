"""HTTP client for the inverter executor.

The decision engine hands every governed command to a sink. In the service
that sink is this client, which forwards commands and published schedules to
the executor that actually talks to the inverters.
"""

import time

import requests
from loguru import logger

from core.dispatch.models import InverterCommand, Schedule

COMMAND_PATH = "/api/commands"
SCHEDULE_PATH = "/api/schedule"


class ExecutorClient:
    """Posts commands and schedules to the executor with retries."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        test_mode: bool = False,
        max_attempts: int = 4,
        retry_delay: float = 4,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.test_mode = test_mode
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.sent_commands = 0

    def _post(self, path: str, payload: dict):
        """POST to the executor, retrying transient failures.

        Client errors (4xx) fail immediately; they will not get better by
        retrying.

        Raises:
            requests.RequestException: If all attempts fail
        """
        if self.test_mode:
            logger.info(f"[TEST MODE] Would POST {path} with {payload}")
            return None

        url = f"{self.base_url}{path}"
        for attempt in range(self.max_attempts):
            try:
                response = requests.post(
                    url, headers=self.headers, json=payload, timeout=self.timeout
                )
                response.raise_for_status()
                if response.content and response.headers.get(
                    "content-type", ""
                ).startswith("application/json"):
                    return response.json()
                return None
            except requests.RequestException as e:
                response = getattr(e, "response", None)
                if response is not None and 400 <= response.status_code < 500:
                    logger.error(
                        f"Executor rejected {url} with {response.status_code}: {e}"
                    )
                    raise

                if attempt < self.max_attempts - 1:
                    logger.warning(
                        f"Executor request to {url} failed on attempt "
                        f"{attempt + 1}/{self.max_attempts}: {e}. "
                        f"Retrying in {self.retry_delay} seconds..."
                    )
                    time.sleep(self.retry_delay)
                else:
                    logger.error(
                        f"Executor request to {url} failed after "
                        f"{self.max_attempts} attempts: {e}"
                    )
                    raise
        return None

    def send_command(self, command: InverterCommand) -> None:
        """Command sink for the decision engine."""
        self._post(
            COMMAND_PATH,
            {
                "inverter_id": command.inverter_id,
                "mode": command.mode.value,
                "issued_at": command.issued_at.isoformat(),
                "reason": command.reason,
                "decision_id": command.decision_id,
                "strategy": command.strategy_name,
            },
        )
        self.sent_commands += 1

    def publish_schedule(self, schedule: Schedule) -> None:
        self._post(
            SCHEDULE_PATH,
            {
                "cycle_id": schedule.cycle_id,
                "created_at": schedule.created_at.isoformat(),
                "health": schedule.health.value,
                "price_version": schedule.price_version,
                "entries": schedule.to_rows(),
            },
        )

    __call__ = send_command
