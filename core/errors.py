"""Exception hierarchy shared by the pipeline."""


class StepSmithError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(StepSmithError):
    """A model provider call failed in a way worth retrying."""

    def __init__(self, message, provider=""):
        super().__init__(message)
        self.provider = provider


class ThrottledError(ProviderError):
    """The provider reported that we are over quota (HTTP 429 and friends)."""


class StepFailure(StepSmithError):
    """A step cannot continue. The message is shown to the user verbatim."""


class PatchApplyError(StepSmithError):
    """A unified diff does not match the text it is applied to."""

    def __init__(self, message, hunk_index=None):
        super().__init__(message)
        self.hunk_index = hunk_index


class CounterStoreUnavailable(StepSmithError):
    """The shared counter/waitlist store could not be reached."""


class RunCancelled(StepSmithError):
    """The caller cancelled the run while it was waiting."""


class SymbolExtractionError(StepSmithError):
    """A symbol extraction strategy could not handle the input."""
