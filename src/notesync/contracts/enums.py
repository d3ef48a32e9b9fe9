"""All status codes, modes, and kinds used across subsystem boundaries.

Values stored in the database or written to the failure marker are the
StrEnum values, so renaming a member is a schema change.
"""

from enum import IntEnum, StrEnum


class NoteStatus(StrEnum):
    """Lifecycle status of a note.

    HIDDEN marks notes a moderator removed from public view.

    Stored in the database (notes.status).
    """

    OPEN = "open"
    CLOSED = "closed"
    HIDDEN = "hidden"


class CommentEvent(StrEnum):
    """Kind of event a comment records within a note thread.

    Stored in the database (note_comments.event).
    """

    OPENED = "opened"
    COMMENTED = "commented"
    CLOSED = "closed"
    REOPENED = "reopened"
    HIDDEN = "hidden"


class RunType(StrEnum):
    """Which feed drives a run.

    Also the key of the run lock, so one lock token exists per run type.
    """

    API = "api"
    PLANET = "planet"


class FeedFormat(StrEnum):
    """XML dialect of a feed file.

    The planet dump carries note fields as attributes; the API search
    endpoint carries them as child elements.
    """

    PLANET = "planet"
    API = "api"


class ExecutorKind(StrEnum):
    """Worker pool implementation."""

    PROCESS = "process"
    THREAD = "thread"


class TicketState(StrEnum):
    """State of a resource gate ticket.

    Stored in the database (gate_tickets.state).
    """

    WAITING = "waiting"
    ACTIVE = "active"


class Stage(StrEnum):
    """Pipeline stage names recorded in failure markers and events."""

    STARTUP = "startup"
    LOCK = "lock"
    FETCH = "fetch"
    PARTITION = "partition"
    TRANSFORM = "transform"
    MERGE = "merge"
    CURSOR = "cursor"
    BOUNDARIES = "boundaries"


class ExitStatus(IntEnum):
    """Process exit codes, one per outcome category.

    Schedulers tell "nothing to do" from "needs attention" by code alone.
    """

    SUCCESS = 0
    INTERNAL_ERROR = 1
    SUCCESS_WITH_WARNINGS = 2
    NO_OP = 3
    VALIDATION_FAILURE = 10
    FETCH_FAILURE = 11
    STORE_FAILURE = 12
    LOCK_CONTENTION = 13
    PREVIOUS_FAILURE_PRESENT = 255

    @property
    def is_failure(self) -> bool:
        """True when an operator needs to look at the run."""
        return self not in (ExitStatus.SUCCESS, ExitStatus.SUCCESS_WITH_WARNINGS, ExitStatus.NO_OP)
