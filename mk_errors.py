"""
mk errors.

Every failure that can abort a connection's command loop is an EngineError
(or a plain OSError from the filesystem / subprocess layer). The text of the
exception is what the client receives as the single response line.
"""


class EngineError(Exception):
    """Base class for engine failures."""


class ProtocolParseError(EngineError, ValueError):
    """Malformed command line."""


class UnknownCommandError(EngineError):
    """No handler resolves the operation name."""

    def __init__(self, name: str):
        super().__init__(f"No such command: {name}")
        self.name = name


class NotFoundError(EngineError, LookupError):
    """A named container or command does not exist."""


class CommandNotImplementedError(EngineError, NotImplementedError):
    """A built-in that is declared but not implemented."""

    def __init__(self, name: str):
        super().__init__(f"{name}: not implemented")
        self.name = name


class CommandFailedError(EngineError):
    """A subprocess exited with a non-zero status."""

    def __init__(self, path: str, exit_code: int):
        super().__init__(f"{path}: exit status {exit_code}")
        self.path = path
        self.exit_code = exit_code


class FatalAllocationError(EngineError):
    """The unique slot space under a directory is exhausted."""


class FatalSocketError(EngineError):
    """The control socket could not be bound or stopped accepting."""
