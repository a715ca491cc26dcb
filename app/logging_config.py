import json
import logging
import sys
from datetime import datetime, timezone

from app.config import settings

# Extras attached by the workflow services via ``extra={...}``.
CONTEXT_FIELDS = ('request_number', 'action', 'actor_id', 'kind', 'status')


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__('%(asctime)s %(levelname)-7s %(name)s: %(message)s')

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [f'{key}={getattr(record, key)}' for key in CONTEXT_FIELDS if getattr(record, key, None) is not None]
        if context:
            line = f"{line} [{' '.join(context)}]"
        return line


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    formatter = JSONFormatter() if (fmt or settings.log_format) == 'json' else TextFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # SQL echo is noisy at INFO.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
