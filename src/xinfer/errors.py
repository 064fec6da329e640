"""Exception hierarchy shared by the loader, the pipeline, and the decode steps.

Every failure path raises one of these so the caller can tell which stage
failed without parsing messages:

- :class:`ModelLoadError` (and :class:`TokenizerLoadError`): a model artifact
  could not be read or parsed.  Raised only while building a pipeline.
- :class:`InvariantViolation`: a caller or upstream component broke a
  contract.  Never retried.
- :class:`ComputationError`: a forward pass failed on tensor shapes, devices,
  or dtypes.  The scheduler decides whether to drop the sequence or the batch.
"""

from __future__ import annotations


class XInferError(Exception):
    """Base class for all errors raised by this package."""


class ModelLoadError(XInferError):
    """A config, template, tokenizer, weight, or adapter file could not be loaded."""


class TokenizerLoadError(ModelLoadError):
    """The tokenizer could not be constructed."""


class InvariantViolation(XInferError):
    """A contract between this package and its caller was broken."""


class UnsupportedModelKindError(InvariantViolation):
    """The requested model kind cannot be served by this loader."""


class MissingFullInputsError(InvariantViolation):
    """An X-LoRA forward call was made without the full-context inputs."""


class GrammarRejectionError(InvariantViolation):
    """The grammar allows no token, or a token it does not allow was appended."""


class ComputationError(XInferError):
    """A tensor computation failed during a forward pass or a decode step.

    Attributes:
        stage: Short name of the failing stage (e.g. ``"forward"``).
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
