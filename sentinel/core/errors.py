"""
Error taxonomy shared by the store, the services and the HTTP layer
"""


class SentinelError(Exception):
    """Base error; `code` is the stable name surfaced to clients"""
    code = "SentinelError"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class DuplicateAccount(SentinelError):
    code = "DuplicateAccount"
    status_code = 409
    default_message = "User already exists"


class InvalidCredentials(SentinelError):
    code = "InvalidCredentials"
    status_code = 401
    default_message = "Invalid credentials"


class MissingDocument(SentinelError):
    code = "MissingDocument"
    status_code = 422
    default_message = "ID Image missing"


class AnalysisUnavailable(SentinelError):
    code = "AnalysisUnavailable"
    status_code = 503
    default_message = "Verification failed"


class StorageCorrupt(SentinelError):
    code = "StorageCorrupt"
    status_code = 500
    default_message = "Stored data is corrupt"


class NetworkUnavailable(SentinelError):
    code = "NetworkUnavailable"
    status_code = 503
    default_message = "Network lookup failed"


class InvalidTransition(SentinelError):
    code = "InvalidTransition"
    status_code = 409
    default_message = "Action not allowed in the current verification step"


class FlowBusy(SentinelError):
    code = "FlowBusy"
    status_code = 409
    default_message = "A verification is already being analyzed"
