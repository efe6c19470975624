"""Stratus: reconcile infrastructure templates against a cloud provider."""

__version__ = "0.1.0"
