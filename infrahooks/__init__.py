"""GitHub webhook relaying, CloudEvent recording, check runs and GitHub bot building blocks."""

__version__ = "0.1.0"