"""Startup config logging with secrets masked."""

from storepay.common.config import settings
from storepay.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def describe_setting(name: str) -> str:
    """Value of one `CommonSettings` field by env name; secrets only report whether they are set."""

    value = getattr(settings, name.lower(), None)
    if value in (None, ""):
        return "<unset>"
    if any(marker in name.upper() for marker in SECRET_MARKERS):
        return "<configured>"
    return str(value)


def log_startup_config(service_name: str, keys: list[str]) -> None:
    config = {key: describe_setting(key) for key in keys}
    logger.info("startup_config service=%s config=%s", service_name, config)
