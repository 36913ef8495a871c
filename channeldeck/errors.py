"""
Error taxonomy shared by services and routers.

Routers never build error bodies for these by hand; the handlers registered
in ``channeldeck.main`` turn any ``ChannelDeckError`` into
``{"success": false, "error": <message>}`` with the class' status code.
Probe failures are not errors: they come back as a normal ``TestResult``.
"""


class ChannelDeckError(Exception):
    """Base class for expected, user-visible failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChannelDeckError):
    """Malformed input: bad code, bad URL, non-array id payload."""

    status_code = 400


class NotFoundError(ChannelDeckError):
    """Unknown code, channel, user or playlist."""

    status_code = 404


class TestLockBusy(ChannelDeckError):
    """Another test run currently holds the advisory test lock."""

    # Keep pytest from collecting this as a test class
    __test__ = False
    status_code = 409


class StorageError(ChannelDeckError):
    """The persistence layer failed a query or a write."""

    status_code = 500


class DuplicateCodeError(StorageError):
    """The unique index rejected a playlist code at insert time."""


class CodeSpaceExhausted(ChannelDeckError):
    """No free code was found within the retry budget."""

    status_code = 503
