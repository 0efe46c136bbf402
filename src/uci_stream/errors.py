class StreamError(Exception):
    """Base class for errors reported to clients as ``analysis:error`` events."""

    kind = "StreamError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"message": self.message, "kind": self.kind}


class InvalidRequest(StreamError):
    """Bad or missing position, mode, bound or perspective."""

    kind = "InvalidRequest"


class EngineTimeout(StreamError):
    """The engine did not acknowledge a readiness probe in time."""

    kind = "EngineTimeout"


class EngineProcessError(StreamError):
    """The engine process failed to start, crashed or is not running."""

    kind = "EngineProcessError"


class ServerBusy(StreamError):
    """The global engine or search limit is exhausted."""

    kind = "ServerBusy"
