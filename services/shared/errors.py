from __future__ import annotations


class BookstoreError(Exception):
    """Base class for every error the bookstore services surface to callers.

    ``code`` is the stable machine-readable name returned over HTTP,
    ``status_code`` the HTTP status the API layer maps it to.
    """

    code = "InternalError"
    status_code = 500
    retriable = False

    def __init__(self, message: str = "", **context: object):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = {k: v for k, v in context.items() if v is not None}


class ConfigError(BookstoreError):
    code = "ConfigError"


class InvalidRequest(BookstoreError):
    code = "InvalidRequest"
    status_code = 400


# --- fanout ---


class UnknownCapability(BookstoreError):
    code = "UnknownCapability"
    status_code = 400


class PublishFailed(BookstoreError):
    code = "PublishFailed"
    status_code = 503


class Unauthorized(BookstoreError):
    """Enqueue attempt whose source identity is not the bound topic."""

    code = "Unauthorized"
    status_code = 403


class DeliveryFailed(BookstoreError):
    code = "DeliveryFailed"
    status_code = 503
    retriable = True


class SubscriptionStillBound(BookstoreError):
    code = "SubscriptionStillBound"
    status_code = 409


class BindingSealed(BookstoreError):
    code = "BindingSealed"
    status_code = 409


class QueueNotFound(BookstoreError):
    code = "QueueNotFound"
    status_code = 404


class TopicNotFound(BookstoreError):
    code = "TopicNotFound"
    status_code = 404


class SubscriptionNotFound(BookstoreError):
    code = "SubscriptionNotFound"
    status_code = 404


# --- media ---


class Forbidden(BookstoreError):
    code = "Forbidden"
    status_code = 403


class GrantExpired(Forbidden):
    code = "Expired"


class TtlTooLong(BookstoreError):
    code = "TtlTooLong"
    status_code = 400


class ObjectNotFound(BookstoreError):
    code = "ObjectNotFound"
    status_code = 404


class UploadNotFound(BookstoreError):
    code = "UploadNotFound"
    status_code = 404
