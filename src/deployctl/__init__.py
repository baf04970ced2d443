"""deployctl - staged multi-service deployment orchestrator."""

__version__ = "0.3.0"
