"""
Error taxonomy shared by every service.

Each error carries the HTTP status it is rendered with; main.py turns them
into `{"detail": ..., "code": ...}` responses.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def code(self) -> str:
        return self.__class__.__name__


class Unauthenticated(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class ValidationError(MarketplaceError):
    status_code = 400


class InvalidTransition(MarketplaceError):
    status_code = 409


class Conflict(MarketplaceError):
    """A concurrent request won the race for the same document."""
    status_code = 409


class AlreadyExists(MarketplaceError):
    status_code = 409


class InsufficientCredit(MarketplaceError):
    status_code = 402


class LimitExceeded(MarketplaceError):
    status_code = 429


# ---------------------------- Ledger transfers -----------------------------
class SenderNotFound(NotFound):
    pass


class RecipientNotFound(NotFound):
    pass


class SelfTransferForbidden(ValidationError):
    pass
