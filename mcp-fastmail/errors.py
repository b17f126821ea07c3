"""Error taxonomy shared by the Fastmail clients and the tool dispatcher."""


class FastmailError(Exception):
    """Base class for every failure raised by this service."""


class ConfigurationError(FastmailError):
    """A required credential is missing or still an unexpanded placeholder."""


class ValidationError(FastmailError):
    """A tool argument is missing or malformed."""


class AuthError(FastmailError):
    """The backend rejected our credentials."""


class NetworkError(FastmailError):
    """The backend could not be reached."""


class ProtocolError(FastmailError):
    """The backend answered, but with an error payload."""

    def __init__(
        self,
        message: str,
        error_type: str | None = None,
        method: str | None = None,
        label: str | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.method = method
        self.label = label  # result label of the failing call within its batch


class SendEmailError(ProtocolError):
    """One step of the draft → submit → move-to-sent choreography failed."""

    def __init__(self, step: str, detail: str):
        super().__init__(f"Send failed at step '{step}': {detail}")
        self.step = step


class BulkUpdateError(ProtocolError):
    """A bulk Email/set applied to some ids but not others.

    Nothing is rolled back: ``updated`` lists the ids that changed and
    ``failed`` maps the remaining ids to the backend's error type.
    """

    def __init__(self, updated: list[str], failed: dict[str, str]):
        total = len(updated) + len(failed)
        details = ", ".join(f"{email_id} ({kind})" for email_id, kind in failed.items())
        super().__init__(f"{len(failed)} of {total} emails could not be updated: {details}")
        self.updated = updated
        self.failed = failed


class NotFoundError(FastmailError):
    """A lookup that must return something came back empty."""


class CapabilityError(FastmailError):
    """The account does not expose the capability an operation needs."""
