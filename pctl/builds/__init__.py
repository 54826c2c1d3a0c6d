"""Build orchestration module.

This module handles:
- Content hashing of build contexts
- Image tag generation and validation
- Context archive streaming with .dockerignore support
- Remote-build and load strategies
- Parallel build orchestration with all-or-nothing results
"""

from pctl.builds.orchestrator import BuildFailedError, BuildOrchestrator

__all__ = ["BuildFailedError", "BuildOrchestrator"]
