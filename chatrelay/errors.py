class ChatRelayError(Exception):
    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


# missing or malformed turn content; rejected before any streaming starts
class ClientInputError(ChatRelayError):
    pass


class StoreUnavailable(ChatRelayError):
    def __init__(self, message: str = "database unavailable"):
        super().__init__(message)


class UpstreamError(ChatRelayError):
    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self):
        if self.status is None:
            return self.message
        return f"{self.message} (status={self.status}, body={self.body!r})"


class Cancelled(ChatRelayError):
    def __init__(self):
        super().__init__("stream cancelled")


class LimitExceeded(ChatRelayError):
    def __init__(self, capability: str, limit: int):
        super().__init__(f"Daily limit reached: you can use {capability} analysis {limit} times a day. Try again tomorrow.")
        self.capability = capability
        self.limit = limit


class CapabilityUnavailable(ChatRelayError):
    pass
