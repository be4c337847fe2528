"""Tracker client implementations.

Key Components:
    - TrackerClient: Abstract get/post/put/delete interface used by the engine
    - JiraRestClient: Jira Cloud REST v3 implementation over pooled httpx

Example:
    >>> from trackflow.providers import JiraRestClient
    >>> client = JiraRestClient("https://acme.atlassian.net", "bot@acme.io", token)
    >>> transitions = await client.get("/rest/api/3/issue/PROJ-1/transitions")
"""

from trackflow.providers.base import OfflineTrackerClient, TrackerClient
from trackflow.providers.jira_rest import JiraRestClient

__all__ = [
    "JiraRestClient",
    "OfflineTrackerClient",
    "TrackerClient",
]
