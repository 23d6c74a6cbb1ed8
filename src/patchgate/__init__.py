"""PatchGate - sandbox-verified, tamper-evident pull requests for proposed edits."""

__version__ = "0.1.0"
