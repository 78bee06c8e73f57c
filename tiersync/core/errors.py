from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures raised while handling a billing event."""


class InvalidSignature(ReconcileError):
    """Missing header, unconfigured secret, or signature mismatch."""


class MalformedEvent(ReconcileError):
    """The verified payload does not have the shape of a Stripe event."""


class RetryableError(ReconcileError):
    """Transient failure; the provider should redeliver the event."""


class StoreUnavailable(RetryableError):
    pass


class ProviderUnavailable(RetryableError):
    pass
