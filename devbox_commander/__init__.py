"""
Devbox Commander — lifecycle orchestration for isolated development containers.
"""

from .app import create_app
from .orchestrator import LifecycleHooks, LifecycleOrchestrator

__version__ = "1.0.0"
__all__ = ["create_app", "LifecycleHooks", "LifecycleOrchestrator"]
