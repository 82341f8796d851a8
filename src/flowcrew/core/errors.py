"""Exception types raised by the flowcrew core.

Only configuration and I/O problems are exceptions.  Mistakes made by an
agent through the tool-call surface are reported back as ``"Error: ..."``
strings so the agent can correct itself.
"""

from __future__ import annotations


class FlowcrewError(Exception):
    """Base class for all flowcrew errors."""


class FlowConfigError(FlowcrewError):
    """The flow specification is malformed or describes an invalid DAG."""


class StateError(FlowcrewError):
    """The workflow state document cannot be read or parsed."""


class GoalError(FlowcrewError):
    """The goal document cannot be read or its frontmatter is invalid."""


class GoalChecksumError(GoalError):
    """The goal body checksum could not be computed."""
