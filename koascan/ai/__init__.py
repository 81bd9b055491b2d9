from __future__ import annotations

from .types import Classifier, RemoteClassification

__all__ = [
    "Classifier",
    "RemoteClassification",
    "RemoteClassifierClient",
    "MockClassifier",
]


def __getattr__(name: str):
    if name == "RemoteClassifierClient":
        from ..api.client import RemoteClassifierClient

        return RemoteClassifierClient
    if name == "MockClassifier":
        from ..api.mock import MockClassifier

        return MockClassifier
    raise AttributeError(f"module 'koascan.ai' has no attribute {name!r}")
