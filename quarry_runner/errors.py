class QuarryRunnerError(Exception):
    pass


class WorkerUnavailableError(QuarryRunnerError):
    """The sandbox worker could not be started or never became ready."""


class BackendUnavailableError(QuarryRunnerError):
    """The remote compile service could not be reached."""


class UnsupportedLanguageError(QuarryRunnerError):
    pass


class InvalidTransitionError(QuarryRunnerError):
    pass


class SessionClosedError(InvalidTransitionError):
    pass
