"""Pipeline: one loaded model behind the contract the scheduler drives."""

from xinfer.pipeline.inputs import ModelInputs, calculate_inputs
from xinfer.pipeline.non_granular import NonGranularState
from xinfer.pipeline.pipeline import GenerationMetadata, Pipeline, PipelineHandle
from xinfer.pipeline.sequence import Sequence
from xinfer.pipeline.variant import ModelVariant, NormalVariant, XLoraVariant

__all__ = [
    "GenerationMetadata",
    "ModelInputs",
    "ModelVariant",
    "NonGranularState",
    "NormalVariant",
    "Pipeline",
    "PipelineHandle",
    "Sequence",
    "XLoraVariant",
    "calculate_inputs",
]
