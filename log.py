import logging
import sys
from middleware import RequestIDMiddleware

# per-request client traffic, too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore")


class ContextualFilter(logging.Filter):
    """Stamps each record with the request id and the analytics session id of the caller."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = RequestIDMiddleware.request_id_context().get()
        record.session_id = RequestIDMiddleware.session_id_context().get()
        return True


def setup_logging(log_level: str = "INFO", log_filename: str | None = "experiment_session.log"):
    log_filter = ContextualFilter()
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(request_id)s|%(session_id)s] - %(name)s - %(message)s'
    )

    # console always, file only when a name is given
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_filename:
        handlers.append(logging.FileHandler(log_filename, mode='a'))

    for handler in handlers:
        handler.addFilter(log_filter)
        handler.setFormatter(formatter)

    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(level=level, handlers=handlers)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))
