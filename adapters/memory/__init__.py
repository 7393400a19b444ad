"""In-process collaborator implementations for development and tests."""

from .events import LocalEventPublisher, NullEventPublisher
from .repository import InMemoryRepository

__all__ = ["InMemoryRepository", "LocalEventPublisher", "NullEventPublisher"]
