# leadflow/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Dispatch context carried on records through ``extra=``
CONTEXT_FIELDS = ("team_id", "lead_id", "closer_id", "request_id", "job_id")

# Short labels for the console line: [team=... lead=... closer=...]
_CONSOLE_LABELS = {"team_id": "team", "lead_id": "lead", "closer_id": "closer", "job_id": "job"}

SERVICE_NAME = "leadflow"


def _record_context(record: logging.LogRecord) -> dict[str, str]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_record_context(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for local development"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        when = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")

        context = _record_context(record)
        tags = " ".join(f"{label}={context[key]}" for key, label in _CONSOLE_LABELS.items() if key in context)
        tags = f" [{tags}]" if tags else ""

        line = f"{color}{when} {record.levelname:<8}{self.RESET} {record.name}{tags} - {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger for the API process and the migrate CLI.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines instead of colored console output
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root.addHandler(handler)

    # Access lines duplicate RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("audit").setLevel(logging.INFO)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Binds dispatch identifiers to every record it emits.

        ctx = LogContext(logger, team_id=lead.team_id, lead_id=lead.id)
        ctx.info("assigned")            # record.team_id / record.lead_id set
    """

    def __init__(
            self,
            logger: logging.Logger,
            team_id: str | None = None,
            lead_id: str | None = None,
            closer_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            key: value
            for key, value in (
                ("team_id", team_id),
                ("lead_id", lead_id),
                ("closer_id", closer_id),
                ("request_id", request_id),
            )
            if value is not None
        }

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)


def mask_phone(phone: str | None) -> str:
    """Customer phone for log lines: ``+155****67``."""
    if not phone:
        return "-"
    if len(phone) <= 6:
        return "***"
    return phone[:4] + "****" + phone[-2:]
