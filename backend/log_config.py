import logging
import os
import sys
from pathlib import Path

from loguru import logger

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Remove default handler
logger.remove()


def add_module_name(record):
    """Ensure every record has module_name in extra."""
    if "module_name" not in record["extra"]:
        record["extra"]["module_name"] = f"{record['name']}:{record['line']}"
    return True


logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <5}</level> | <cyan>{extra[module_name]}</cyan> - {message}",
    level=LOG_LEVEL,
    colorize=True,
    filter=add_module_name,
)


class InterceptHandler(logging.Handler):
    """Route stdlib logging (core.dispatch, apscheduler, uvicorn) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        if record.name == "root":
            module_name = record.module
        elif "." in record.name:
            module_name = record.name
        else:
            module_name = Path(record.pathname).stem

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{logging.Formatter().formatException(record.exc_info)}"

        logger.bind(module_name=f"{module_name}:{record.lineno}").log(level, message)


logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

# APScheduler is chatty about every job run and misfire
logging.getLogger("apscheduler.executors.default").setLevel(logging.ERROR)
logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)

for name in list(logging.root.manager.loggerDict.keys()):
    if name not in ["apscheduler.executors.default", "apscheduler.scheduler"]:
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
