# # Log to stdout in JSON format
# export CARELINE_LOG_LEVEL=DEBUG
# export CARELINE_LOG_OUTPUT=stdout
# export CARELINE_LOG_FORMAT=json

# # Log worker activity to stderr and a file in human-readable format
# export CARELINE_LOG_LEVEL=INFO
# export CARELINE_LOG_OUTPUT=both
# export CARELINE_LOG_FORMAT=human
# export CARELINE_LOG_FILE=careline-worker.log

# # Only warnings (dead letters, failed conditions) as JSON lines in a file
# export CARELINE_LOG_LEVEL=WARNING
# export CARELINE_LOG_OUTPUT=file
# export CARELINE_LOG_FORMAT=json
# export CARELINE_LOG_FILE=careline.json


import json
import os
import sys

from loguru import logger


class JsonFormatter:
    def __call__(self, record):
        log_record = {
            "time": record["time"].isoformat(),
            "level": record["level"].name,
            "message": record["message"],
            "module": record["module"],
            "function": record["function"],
            "line": record["line"],
            "process": record["process"].name,
            "thread": record["thread"].name,
            "extra": record["extra"],
        }

        if record["exception"] is not None:
            log_record["exception"] = {
                "type": record["exception"].type.__name__,
                "value": str(record["exception"].value),
            }

        # loguru treats the returned string as a format template
        return json.dumps(log_record, default=str).replace("{", "{{").replace("}", "}}") + "\n"


HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{thread.name}</magenta> - <level>{message}</level>"
)


def setup_logger():
    """Set up the logger based on environment variables."""
    logger.remove()

    if os.environ.get("CARELINE_DISABLE_LOGGING", "").lower() in ["true", "1", "yes"]:
        logger.disable("careline")
        return

    log_level = os.environ.get("CARELINE_LOG_LEVEL", "").upper()
    if not log_level:
        logger.disable("careline")
        return

    logger.enable("careline")
    log_output = os.environ.get("CARELINE_LOG_OUTPUT", "stderr").lower()
    log_format = os.environ.get("CARELINE_LOG_FORMAT", "human").lower()

    sinks = []
    if log_output in ["stdout", "both"]:
        sinks.append(sys.stdout)
    if log_output in ["stderr", "both"]:
        sinks.append(sys.stderr)
    if log_output in ["file", "both"]:
        sinks.append(os.environ.get("CARELINE_LOG_FILE", "careline.log"))

    for sink in sinks:
        if log_format == "json":
            logger.add(sink, format=JsonFormatter(), level=log_level)
        else:
            logger.add(sink, format=HUMAN_FORMAT, level=log_level)


def get_logger():
    """Get the configured logger."""
    return logger


# Set up the logger when this module is imported
setup_logger()
