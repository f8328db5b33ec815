"""Exceptions raised by chunkrelay components"""


class ChunkRelayError(Exception):
    """Base class for all chunkrelay errors"""


class ConfigError(ChunkRelayError):
    """Invalid configuration value or file"""


class ValidationError(ChunkRelayError):
    """Input rejected at the boundary, no state was changed"""


class FileMismatchError(ValidationError):
    """Supplied file does not match the recorded name/size"""


class MissingFileError(ValidationError):
    """Session has no attached file and none was supplied"""


class FileTooLargeError(ValidationError):
    """File exceeds the platform limit and bypass is disabled"""


class SessionNotFoundError(ChunkRelayError):
    """Unknown session id"""


class IncompleteSessionError(ChunkRelayError):
    """Operation requires every chunk of a session"""


class TransferError(ChunkRelayError):
    """A transfer could not be carried out"""


class TransportError(TransferError):
    """The chat platform rejected or failed a request"""


class RateLimitedError(TransportError):
    """The chat platform asked us to slow down.

    ``retry_after`` is the platform's suggested wait in seconds, if any.
    """

    def __init__(self, message: str = "Rate limited", retry_after: float = 0.0):
        self.message = message
        self.retry_after = retry_after
        super().__init__(self.message)


class ChunkFetchError(TransferError):
    """Fetching a chunk returned no data"""


class TransferCancelled(ChunkRelayError):
    """The current transfer attempt was cancelled"""
