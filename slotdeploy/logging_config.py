import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

EXTRA_KEYS = ("slot", "port", "release", "state", "attempt", "status_code")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage().strip(),
            "module": record.module,
        }
        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info:
            log_entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    logger = logging.getLogger("slotdeploy")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    stdout_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(stdout_handler)

    if log_file is not None:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logger.warning(f"Cannot open log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)

    return logger
