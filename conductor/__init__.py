"""Conductor: control plane that drives a coding agent through verify, fix and review loops."""

__version__ = "0.1.0"
