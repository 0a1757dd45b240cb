"""
Error taxonomy shared by the sampling, dialer and runs apps.
"""


class OrchestratorError(Exception):
    pass


class AlreadyRunning(OrchestratorError):
    """A run of the same kind is still in progress. Poll its status instead."""

    def __init__(self, kind, run_id=None):
        self.kind = kind
        self.run_id = run_id
        super().__init__(f"A {kind} run is already in progress")


class NoEligibleFarmers(OrchestratorError):
    """Not a failure: every attendee is in cooling or already tasked."""


class NoCapableAgent(OrchestratorError):
    def __init__(self, language):
        self.language = language
        super().__init__(f"No active agent speaks {language}")


class RunAborted(OrchestratorError):
    """The job's Run is no longer `running` (failed as stale, or finished elsewhere)."""

    def __init__(self, run_id, status):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is {status}, stopping its job")


class ConfirmationRequired(OrchestratorError):
    pass


class ExternalSourceUnavailable(OrchestratorError):
    pass


class InvariantViolation(OrchestratorError):
    pass
