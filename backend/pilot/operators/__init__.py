from __future__ import annotations

from pilot.config import Settings
from pilot.operators.base import Operator


def create_operator(config: Settings) -> Operator | None:
    """Build the operator backend named by ``config.OPERATOR`` ("none" gives None)."""
    kind = (config.OPERATOR or "none").lower()
    if kind == "none":
        return None
    if kind == "local":
        from pilot.operators.local import LocalDesktopOperator

        return LocalDesktopOperator(wait_seconds=config.WAIT_ACTION_SECONDS)
    if kind == "remote":
        from pilot.operators.remote import (
            DeviceAuth,
            RemoteComputer,
            RemoteComputerOperator,
            RetryPolicy,
        )

        computer = RemoteComputer(
            config.REMOTE_PROXY_URL,
            DeviceAuth(config.REMOTE_DEVICE_ID, config.REMOTE_DEVICE_SECRET),
            instance_id=config.REMOTE_SANDBOX_ID,
            retry=RetryPolicy(
                retries=config.REMOTE_MAX_RETRIES,
                backoff_seconds=config.REMOTE_RETRY_BACKOFF_SECONDS,
            ),
        )
        return RemoteComputerOperator(computer, wait_seconds=config.WAIT_ACTION_SECONDS)
    if kind == "adb":
        from pilot.operators.adb import AdbOperator

        return AdbOperator(device_id=config.ADB_DEVICE_ID, adb_path=config.ADB_PATH)
    raise ValueError(f"Unknown operator '{config.OPERATOR}', expected none, local, remote or adb")
