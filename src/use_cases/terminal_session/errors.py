"""
Terminal session errors.

Every failure the terminal subsystem reports to a client is one of these.
``message`` is the short text, ``context`` carries identifiers for logs
and for the error envelope's context field.
"""


class TerminalError(Exception):

    def __init__(self, message: str, context: str = ""):
        self.message = message
        self.context = context
        super().__init__(f"{message}: {context}" if context else message)


class ContainerResolutionError(TerminalError):
    pass


class ContainerNotFoundError(ContainerResolutionError):
    pass


class NoRunningContainerError(ContainerResolutionError):
    pass


class StackMismatchError(ContainerResolutionError):
    """Container does not carry the stack label it was requested under."""


class NoCompatibleShellError(TerminalError):
    pass


class SessionCreateError(TerminalError):
    pass


class SessionNotFoundError(TerminalError):
    pass


class SessionClosedError(TerminalError):
    pass


class InvalidGeometryError(TerminalError):
    pass


class SessionIOError(TerminalError):
    pass
