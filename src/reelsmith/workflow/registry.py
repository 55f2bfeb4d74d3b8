"""Step registry: maps every :class:`StepKind` to its implementation."""

from __future__ import annotations

from collections.abc import Callable

from .definitions import StepDefinition
from .models import StepKind
from .steps.analysis import AnalyzeVideoStep, FetchMetadataStep, ValidateSegmentsStep
from .steps.base import WorkflowStep
from .steps.compose import AddBackgroundMusicStep, ConcatenateStep, ExportStep
from .steps.extract import SplitSegmentsStep
from .steps.narration import GenerateNarrationsStep
from .steps.process import ProcessSegmentsConcurrentStep, ProcessSegmentsSequentialStep

__all__ = ["StepFactory", "create_step"]

StepFactory = Callable[[StepDefinition], WorkflowStep]


def create_step(definition: StepDefinition) -> WorkflowStep:
    """Build the step for ``definition``; every kind has exactly one implementation."""
    match definition.kind:
        case StepKind.FETCH_METADATA:
            return FetchMetadataStep(definition)
        case StepKind.ANALYZE_VIDEO:
            return AnalyzeVideoStep(definition)
        case StepKind.VALIDATE_SEGMENTS:
            return ValidateSegmentsStep(definition)
        case StepKind.GENERATE_NARRATIONS:
            return GenerateNarrationsStep(definition)
        case StepKind.SPLIT_SEGMENTS:
            return SplitSegmentsStep(definition)
        case StepKind.PROCESS_SEGMENTS_CONCURRENT:
            return ProcessSegmentsConcurrentStep(definition)
        case StepKind.PROCESS_SEGMENTS_SEQUENTIAL:
            return ProcessSegmentsSequentialStep(definition)
        case StepKind.CONCATENATE:
            return ConcatenateStep(definition)
        case StepKind.ADD_BGM:
            return AddBackgroundMusicStep(definition)
        case StepKind.EXPORT:
            return ExportStep(definition)
    raise ValueError(f"Unsupported step kind: {definition.kind!r}")
