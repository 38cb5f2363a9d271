from luogu_archive.models.crawl import FailureClass


class NetworkError(Exception):
    """Transport-level failure: DNS, connect, timeout or reset."""


class ValidationError(Exception):
    """Malformed caller input, rejected before any network call."""


class NotFoundError(Exception):
    """Requested entity is absent from the persisted store."""


class CrawlFailed(Exception):
    """
    Raised by job handlers when a crawl comes back with a classified failure.
    Carries only the message and classification, never the response object.
    """

    def __init__(self, message: str, failure_class: FailureClass) -> None:
        super().__init__(message)
        self.message = message
        self.failure_class = failure_class
