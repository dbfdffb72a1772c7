"""Slacker: action item tracking for Slack threads and GitHub issues."""

__version__ = "1.0.0"
