"""Exception hierarchy for Storyloom.

Conflicts between reservations are not errors: they come back as queued
or blocked outcomes with a diagnostic payload. The classes here cover the
cases a caller has to handle.
"""

from __future__ import annotations


class StoryloomError(Exception):
    """Base class for all Storyloom errors."""


class NotFoundError(StoryloomError):
    """A referenced project, story or worker does not exist.

    Attributes:
        entity: Kind of record that was looked up ("story", "project", ...).
        key: The identifier that was not found.
    """

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity.capitalize()} not found: {key}")


class ContentionError(StoryloomError):
    """A transactional write lost a race and may be retried."""


class AllocationExhaustedError(StoryloomError):
    """Short-id allocation kept losing races until the retry bound was hit.

    Attributes:
        namespace: Project short code being allocated from.
        attempts: Number of attempts made.
    """

    def __init__(self, namespace: str, attempts: int) -> None:
        self.namespace = namespace
        self.attempts = attempts
        super().__init__(
            f"Could not allocate a story id in namespace {namespace} "
            f"after {attempts} attempts"
        )


class MalformedStateError(StoryloomError):
    """A stored story cannot be interpreted (e.g. an unparseable blocked reason).

    Attributes:
        short_id: Story whose state is malformed.
        reason: What could not be interpreted.
    """

    def __init__(self, short_id: str, reason: str) -> None:
        self.short_id = short_id
        self.reason = reason
        super().__init__(f"Malformed state on {short_id}: {reason}")


class ConfigInvalidError(StoryloomError):
    """A threshold, cap or override is out of range."""


class InvalidPatternError(StoryloomError):
    """A reservation path or glob pattern was rejected."""
