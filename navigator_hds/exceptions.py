"""Navigator HDS exceptions.

Not-found conditions of compartments and sessions are never raised; they are
logged and resolved as empty results. Everything below requires caller
awareness.
"""


class HDSError(Exception):
    """Base class for all Navigator HDS errors."""


class ValidationError(HDSError):
    """Input rejected before any state mutation."""


class ConfigurationError(ValidationError):
    """Malformed compartment, session or vault configuration."""


class WeakPasswordError(ValidationError):
    """Password does not satisfy the password policy."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "Password does not meet policy: " + "; ".join(self.errors)
        )


class EntityTypeError(ValidationError):
    """Entity type not declared for a session or vault."""


class SessionExistsError(ValidationError):
    """A session with the same id is already active."""


class AuthenticationError(HDSError):
    """Wrong password: key derivation succeeded but authentication failed."""


class IntegrityError(HDSError):
    """Stored or exported data is corrupted or was tampered with."""


class VaultStateError(HDSError):
    """Operation not allowed in the current vault state."""


class VaultLockedError(VaultStateError):
    """The vault key is not available in memory."""


class RemoteStoreError(HDSError):
    """The durable session store could not be reached or refused a call."""


class SerializationError(HDSError):
    """A value could not be encoded or decoded."""
