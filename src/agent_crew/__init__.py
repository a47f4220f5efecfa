"""agent-crew: runner fleet for AI agent tasks and team runs."""

__version__ = "0.1.0"
