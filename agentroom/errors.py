"""Failure taxonomy for one delegation branch.

Reaching the depth ceiling is a policy stop and deliberately has no exception
here; the dispatcher reports it as a flag on the branch result.
"""


class DelegationError(Exception):
    """Base class for failures local to one delegation branch."""

    label = "Delegation failed"

    def annotation(self) -> str:
        detail = str(self).strip()
        return f"[Error: {self.label}: {detail}]" if detail else f"[Error: {self.label}]"


class ContextBuildFailure(DelegationError):
    """Agent directory or channel history could not be read."""

    label = "Could not build context"


class ToolInvocationFailure(DelegationError):
    """A tool call failed. Rendered inline; never aborts the stream."""

    label = "Tool failed"


class StreamFailure(DelegationError):
    """The generation call errored or its transport broke."""

    label = "Model stream failed"


class PersistenceFailure(DelegationError):
    """A message content write was rejected by the store."""

    label = "Could not save message"
