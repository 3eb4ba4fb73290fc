import logging
import re
import sys
from contextvars import ContextVar

# Domain names for structured logging (ledger, scoring, profile store, cache, worker, HTTP).
DOMAIN_LEDGER = "ledger"
DOMAIN_SCORING = "scoring"
DOMAIN_PROFILE = "profile"
DOMAIN_CACHE = "cache"
DOMAIN_WORKER = "worker"
DOMAIN_API = "api"

LOG_FORMAT = "%(asctime)s | %(levelname)s | [%(domain)s] | req=%(request_id)s | %(name)s | %(message)s"

# Set per HTTP request by request_id_middleware; "-" for worker and startup logs.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


def get_domain_logger(name: str, domain: str) -> logging.LoggerAdapter[logging.Logger]:
    """Return a logger that adds the given domain to every log record (for filtering by domain)."""
    base = logging.getLogger(name)
    return logging.LoggerAdapter(base, {"domain": domain})


class LogContextFilter(logging.Filter):
    """Fill in ``domain`` and ``request_id`` so the format string never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "domain"):
            record.domain = "app"  # type: ignore[attr-defined]
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()  # type: ignore[attr-defined]
        return True


_SECRET_PATTERNS = [
    re.compile(r"(?i)(x-api-key\s*[=:]\s*)([^\s,;]+)"),
    re.compile(r"(?i)(internal_api_key\s*[=:]\s*)([^\s,;]+)"),
    re.compile(r"(?i)(password\s*[=:]\s*)([^\s,;]+)"),
    # credentials inside redis:// or postgresql+asyncpg:// URLs
    re.compile(r"(?i)([a-z0-9+]+://[^:/@\s]*:)([^@\s]+)(?=@)"),
]


def redact_secrets(message: str) -> str:
    text = str(message or "")
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


class SecretRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(record.getMessage())
        record.args = ()
        return True


class SuppressHealthCheckFilter(logging.Filter):
    """Drop uvicorn access lines for successful GET /health probes."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not ("/health" in msg and " 200" in msg)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(LogContextFilter())
    handler.addFilter(SecretRedactionFilter())
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), handlers=[handler])

    # SQL echo is controlled by DATABASE_ECHO, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").addFilter(SuppressHealthCheckFilter())
