"""
shipwright - container release pipeline: build, publish, provision, deploy, tear down
"""

__version__ = "0.3.0"

from .core import Orchestrator, PipelineError

__all__ = ["Orchestrator", "PipelineError"]
