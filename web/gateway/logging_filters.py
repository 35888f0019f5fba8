"""Logging filter that stamps records with the current request id."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` to every record.

    Outside a request (management commands, startup) the ContextVar default
    ``"-"`` is used, so formatters can always reference ``%(request_id)s``.
    A ``request_id`` passed explicitly through ``extra`` wins.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
