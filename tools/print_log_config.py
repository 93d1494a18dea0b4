"""Print the effective logging configuration of the API as JSON."""

import json
import logging
import os
import sys

from splint_factory.app_logging import ACCESS_LOGGER_NAME, APP_LOGGER_NAME


def get_log_config():
    log_dir = os.path.abspath(os.getenv("LOG_DIR", "logs"))
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    return {
        "log_dir": log_dir,
        "app_log": os.path.join(log_dir, "app.log"),
        "access_log": os.path.join(log_dir, "access.log"),
        "app_logger": APP_LOGGER_NAME,
        "access_logger": ACCESS_LOGGER_NAME,
        "log_level": logging.getLevelName(log_level),
        "log_json": os.getenv("LOG_JSON", "false").lower() == "true",
        "log_request_bodies": os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true",
        "retention_days": int(os.getenv("LOG_RETENTION_DAYS", "7")),
        "rotate_utc": os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
    }


def main():
    sys.stdout.write(json.dumps(get_log_config(), indent=2) + "\n")


if __name__ == "__main__":
    main()
