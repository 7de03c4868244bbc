"""Brainstem FLAIR hyperintensity pipeline.

Keep imports lightweight so the image utilities can be used without pulling in
the orchestrator, matplotlib or pandas at package import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from BrainstemPipeline.batch import BatchRunner as BatchRunner
    from BrainstemPipeline.config import PipelineConfig as PipelineConfig
    from BrainstemPipeline.orchestrator import PipelineOrchestrator as PipelineOrchestrator

__all__ = ["BatchRunner", "PipelineConfig", "PipelineOrchestrator"]


def __getattr__(name: str) -> Any:
    if name == "PipelineConfig":
        from BrainstemPipeline.config import PipelineConfig as _PipelineConfig

        return _PipelineConfig
    if name == "PipelineOrchestrator":
        from BrainstemPipeline.orchestrator import PipelineOrchestrator as _PipelineOrchestrator

        return _PipelineOrchestrator
    if name == "BatchRunner":
        from BrainstemPipeline.batch import BatchRunner as _BatchRunner

        return _BatchRunner
    raise AttributeError(name)
