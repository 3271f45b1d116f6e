"""Exception taxonomy for the issuance pipeline.

Validation errors are raised before anything is persisted. ``AlreadyClaimed``
is a conflict and callers treat it as a successful no-op. Mail failures are
raised by transports and swallowed by the notification dispatcher.
"""


class PassflowError(Exception):
    pass


class ValidationError(PassflowError):
    pass


class InvalidGuestsOrDays(ValidationError):
    def __init__(self, guests: int, days: int, detail: str = ""):
        self.guests = guests
        self.days = days
        msg = f"invalid guests/days: guests={guests} days={days}"
        super().__init__(f"{msg} ({detail})" if detail else msg)


class ConfigurationNotFound(ValidationError):
    def __init__(self, seller_id: str, configuration_id: str | None = None):
        self.seller_id = seller_id
        self.configuration_id = configuration_id
        super().__init__(
            f"no configuration for seller {seller_id!r}"
            + (f" (configuration {configuration_id!r})"
               if configuration_id else "")
        )


class InvalidConfiguration(ValidationError):
    pass


class InvalidConfirmation(ValidationError):
    pass


class AlreadyClaimed(PassflowError):
    def __init__(self, scheduled_id: str):
        self.scheduled_id = scheduled_id
        super().__init__(f"scheduled issuance {scheduled_id} already claimed")


class MailDeliveryError(PassflowError):
    pass


class InvalidDeliveryMethod(ValidationError):
    def __init__(self, requested: str, allowed: str):
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"delivery method {requested!r} not allowed by configuration "
            f"({allowed})"
        )


class InvalidRequest(ValidationError):
    pass
