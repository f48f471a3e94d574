"""
Per-request correlation id shared by every log line of a transition
"""
import logging
from contextvars import ContextVar
from typing import Optional
from uuid import uuid4

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


def new_request_id() -> str:
    request_id = uuid4().hex
    _request_id.set(request_id)
    return request_id


def get_request_id() -> str:
    return _request_id.get()


def bind_request_id(request_id: Optional[str]) -> None:
    _request_id.set(request_id or "-")


class RequestIdFilter(logging.Filter):
    """Stamp ``record.request_id`` so formatters can print it"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
        handlers=[handler],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
