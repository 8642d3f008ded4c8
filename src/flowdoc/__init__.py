"""FlowDoc - node catalog documentation and workflow validation server."""

__version__ = "1.0.0"
