"""
Remote retrieval for the image cache.

- FetchController: starts, pauses and resumes streaming transfers
- FetchSession: handle for one transfer
"""

from cachedimage.retrieval.fetch import FetchController, FetchSession, ProgressCallback

__all__ = [
    "FetchController",
    "FetchSession",
    "ProgressCallback",
]
