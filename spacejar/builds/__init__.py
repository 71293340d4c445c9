"""Build orchestration module.

This module handles:
- Running the virtualenv and pip commands
- Staging application sources
- Driving the build from base image to written layout
"""

from spacejar.builds.service import BuildOrchestrator, BuildReport, build_image

__all__ = ["BuildOrchestrator", "BuildReport", "build_image"]
