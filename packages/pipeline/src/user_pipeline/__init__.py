"""Deferred-parameter delivery pipeline: source -> build -> deploy."""

__version__ = "0.1.0"
