"""External services the responder delegates to."""

from evalbot.collaborators.docs import DocIndex
from evalbot.collaborators.playground import Playground
from evalbot.collaborators.registry import Registry

__all__ = ["DocIndex", "Playground", "Registry"]
