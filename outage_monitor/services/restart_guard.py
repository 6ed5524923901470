"""
Restart Guard

Reboots the device through the supervisor API once every reboot interval.

Flow on each check:
1. Read the last restart timestamp
2. If the reboot interval has elapsed, write "now" first (optimistic)
3. POST {supervisor}/v1/reboot?apikey=<key> with {"force": true}
4. On failure, restore the previous timestamp so the next check retries
"""

from datetime import datetime, timedelta
from typing import Callable

import httpx

from ..common.exceptions import RestartError, StateFileError
from ..common.logging_setup import get_service_logger
from ..storage.event_store import format_timestamp, utc_now
from ..storage.restart_state import RestartTimestampFile

logger = get_service_logger("watchdog")


class RestartGuard:
    def __init__(
        self,
        state_file: RestartTimestampFile,
        supervisor_address: str,
        api_key: str,
        reboot_interval: timedelta,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.state_file = state_file
        self.supervisor_address = supervisor_address.rstrip("/")
        self.api_key = api_key
        self.reboot_interval = reboot_interval
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._clock = clock

        self._restart_count = 0
        self._failure_count = 0

    def bootstrap(self) -> None:
        """
        Initialize the timestamp file when missing.

        Raises:
            StateFileError: the file cannot be written
        """
        if self.state_file.exists():
            return
        now = self._clock()
        self.state_file.write(now)
        logger.info(f"Initialized restart timestamp to {format_timestamp(now)}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def check_once(self) -> bool:
        """
        One watchdog tick.

        Returns:
            True when a restart was requested and accepted
        """
        try:
            last_restart = self.state_file.read()
        except StateFileError as e:
            # Unreadable file: start a fresh interval rather than rebooting blindly
            logger.warning(f"{e.message}, resetting restart timestamp")
            self.state_file.write(self._clock())
            return False

        now = self._clock()
        if now - last_restart <= self.reboot_interval:
            return False

        logger.info(
            "Reboot interval elapsed, requesting restart",
            extra={
                "last_restart": format_timestamp(last_restart),
                "reboot_interval_s": self.reboot_interval.total_seconds(),
            },
        )

        self.state_file.write(now)
        try:
            await self._request_restart()
        except RestartError as e:
            self._failure_count += 1
            self.state_file.write(last_restart)
            logger.error(
                f"{e.message}, restart timestamp rolled back",
                extra={"status_code": e.status_code},
            )
            return False

        self._restart_count += 1
        logger.info("Restart accepted by supervisor")
        return True

    async def _request_restart(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)

        try:
            response = await self._client.post(
                f"{self.supervisor_address}/v1/reboot",
                params={"apikey": self.api_key},
                json={"force": True},
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise RestartError(f"supervisor unreachable: {e}") from e

        if not response.is_success:
            raise RestartError(
                f"supervisor answered HTTP {response.status_code}",
                status_code=response.status_code,
            )

    def get_stats(self) -> dict:
        return {
            "restart_count": self._restart_count,
            "failure_count": self._failure_count,
            "reboot_interval_s": self.reboot_interval.total_seconds(),
        }
