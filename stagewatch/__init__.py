"""
stagewatch - client-side controller for a five-stage analysis pipeline.
"""

__version__ = "1.0.0"

from .monitor import PipelineMonitor

__all__ = ["PipelineMonitor"]
