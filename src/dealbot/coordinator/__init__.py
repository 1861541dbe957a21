"""
Coordinator package.

This package implements deal evaluation orchestration:
- Stage plan and stage inputs
- Bounded evidence gathering
- The analyst, associate and partner pipeline
- Single-step resumption of stalled runs
"""

from dealbot.coordinator.evidence import EvidenceGatherer, SeedResult
from dealbot.coordinator.pipeline import DealPipeline, PipelineResult
from dealbot.coordinator.resume import ResumeAdvancer

__all__ = [
    "DealPipeline",
    "EvidenceGatherer",
    "PipelineResult",
    "ResumeAdvancer",
    "SeedResult",
]
