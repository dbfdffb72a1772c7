"""
External collaborators for Slacker.

This package provides:
- The abstract chat and search interfaces the core depends on
- A Slack Web API client
- An Elasticsearch document store
"""

from .base import (
    ChatClient,
    ChatProfile,
    ExternalServiceError,
    SearchIndex,
    ThreadReply,
    ThreadRoot,
    ts_to_datetime,
)
from .elastic import ElasticSearchIndex
from .slack import SlackWebClient

__all__ = [
    "ChatClient",
    "ChatProfile",
    "ExternalServiceError",
    "SearchIndex",
    "ThreadReply",
    "ThreadRoot",
    "ts_to_datetime",
    "ElasticSearchIndex",
    "SlackWebClient",
]
