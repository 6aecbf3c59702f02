"""pipewright: self-hosted multi-platform build orchestrator."""

__version__ = "0.1.0"
