"""Exception taxonomy shared by every pillar.

The post-processing functions never raise; everything else reports failures
to its caller with one of these types and leaves its state as it was.
"""


class CodeMateError(Exception):
    """Base class for all errors raised by codemate."""


class ValidationError(CodeMateError, ValueError):
    """A rule or profile violates its required-field or regex invariant."""


class NotFoundError(CodeMateError, KeyError):
    """A rule, profile or conversation id does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


class TransportError(CodeMateError):
    """The inference server is unreachable, timed out, or answered with an error."""


class PersistenceError(CodeMateError):
    """The settings file or a conversation record could not be read or written."""


class SessionBusyError(CodeMateError):
    """A turn or compression is already in flight."""


class CancellationSignal(CodeMateError):
    """A streaming turn was stopped on purpose. Not a failure."""
