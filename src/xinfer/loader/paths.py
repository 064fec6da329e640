"""Model path resolution: map a model id (local directory or Hub repo) to its files.

Resolution only locates files; nothing here parses them.  Hub repos are
fetched with ``huggingface_hub.snapshot_download`` restricted to the files
the loader needs, so the rest of the loader only ever sees local paths.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from huggingface_hub import get_token, snapshot_download
from huggingface_hub.utils import HfHubHTTPError

from xinfer.errors import ModelLoadError
from xinfer.loader.adapters import Ordering

logger = logging.getLogger(__name__)

_BASE_PATTERNS = ["config.json", "tokenizer.json", "tokenizer_config.json", "*.safetensors"]

_ADAPTER_CONFIG = "adapter_config.json"
_ADAPTER_WEIGHTS = "adapter_model.safetensors"
_CLASSIFIER_WEIGHTS = "xlora_classifier.safetensors"
_CLASSIFIER_CONFIG = "xlora_config.json"


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenSource:
    """Where to obtain the Hub access token.

    Parsed from one of ``literal:<token>``, ``env:<VAR>``, ``path:<file>``,
    ``cache`` (the token saved by ``huggingface-cli login``), or ``none``.
    """

    kind: str
    value: str | None = None

    @classmethod
    def parse(cls, source: str) -> TokenSource:
        """Parse a token source string.

        Raises:
            ValueError: If the string does not name a known source.
        """
        kind, sep, value = source.partition(":")
        if kind in ("cache", "none") and not sep:
            return cls(kind)
        if kind in ("literal", "env", "path") and sep and value:
            return cls(kind, value)
        raise ValueError(
            f"Invalid token source {source!r}: expected literal:<token>, env:<VAR>, "
            "path:<file>, cache, or none"
        )

    def resolve(self) -> str | None:
        """Return the token, or ``None`` for anonymous access."""
        match self.kind:
            case "literal":
                return self.value
            case "env":
                assert self.value is not None
                token = os.environ.get(self.value)
                if token is None:
                    logger.warning("Environment variable %s is not set, using no token", self.value)
                return token
            case "path":
                assert self.value is not None
                try:
                    return Path(self.value).read_text().strip()
                except OSError as exc:
                    raise ModelLoadError(f"cannot read token file {self.value}: {exc}") from exc
            case "cache":
                return get_token()
            case _:
                return None


# ---------------------------------------------------------------------------
# Resolved paths
# ---------------------------------------------------------------------------


@dataclass
class AdapterPaths:
    """Files of one named LoRA adapter."""

    name: str
    config: Path
    weights: Path


@dataclass
class ModelPaths:
    """Local locations of every artifact a pipeline is built from.

    Attributes:
        config: The model's config.json.
        tokenizer: The tokenizer.json.
        template: The chat template source (tokenizer_config.json or an override).
        weights: One or more safetensors shards, sorted by name.
        adapters: Adapter files in ordering order (LoRA/X-LoRA kinds only).
        classifier_weights: X-LoRA classifier weights (X-LoRA kind only).
        classifier_config: X-LoRA classifier config (X-LoRA kind only).
        ordering: The adapter ordering the adapters were resolved from.
    """

    config: Path
    tokenizer: Path
    template: Path
    weights: list[Path]
    adapters: list[AdapterPaths] | None = None
    classifier_weights: Path | None = None
    classifier_config: Path | None = None
    ordering: Ordering | None = None


def fetch_repo(
    repo_id: str,
    patterns: list[str],
    *,
    revision: str | None = None,
    token: str | None = None,
) -> Path:
    """Return a local directory holding ``repo_id``'s files matching ``patterns``.

    A path to an existing local directory is returned as-is.

    Raises:
        ModelLoadError: If the repo cannot be fetched.
    """
    if Path(repo_id).is_dir():
        return Path(repo_id)
    logger.info("Fetching %s (revision=%s) from the Hub", repo_id, revision or "main")
    try:
        return Path(
            snapshot_download(repo_id, revision=revision, token=token, allow_patterns=patterns)
        )
    except (HfHubHTTPError, OSError, ValueError) as exc:
        raise ModelLoadError(f"cannot fetch {repo_id}: {exc}") from exc


def _require(path: Path) -> Path:
    if not path.is_file():
        raise ModelLoadError(f"required file not found: {path}")
    return path


def resolve_model_paths(
    model_id: str,
    *,
    revision: str | None = None,
    token: str | None = None,
    tokenizer_json: str | None = None,
    chat_template: str | None = None,
    xlora_model_id: str | None = None,
    ordering: Ordering | None = None,
    with_classifier: bool = False,
) -> ModelPaths:
    """Resolve every file location for a model and its optional adapters.

    Args:
        model_id: Base model directory or Hub repo id.
        revision: Hub revision (branch, tag, or commit) for every repo.
        token: Hub access token, or ``None``.
        tokenizer_json: Override path for tokenizer.json.
        chat_template: Override path for the chat template JSON.
        xlora_model_id: Adapter repo; required when ``ordering`` is given.
        ordering: Adapter ordering; selects which adapter subdirectories to fetch.
        with_classifier: Also resolve the X-LoRA classifier files.

    Returns:
        The resolved :class:`ModelPaths`.

    Raises:
        ModelLoadError: If a repo cannot be fetched or a required file is absent.
    """
    model_dir = fetch_repo(model_id, _BASE_PATTERNS, revision=revision, token=token)

    weights = sorted(model_dir.glob("*.safetensors"))
    if not weights:
        raise ModelLoadError(f"no .safetensors weights found for {model_id}")

    paths = ModelPaths(
        config=_require(model_dir / "config.json"),
        tokenizer=_require(
            Path(tokenizer_json) if tokenizer_json else model_dir / "tokenizer.json"
        ),
        template=_require(
            Path(chat_template) if chat_template else model_dir / "tokenizer_config.json"
        ),
        weights=weights,
    )

    if ordering is None:
        return paths
    if xlora_model_id is None:
        raise ModelLoadError("an adapter ordering was given without an adapter model id")

    patterns = [f"{name}/*" for name in ordering.adapters]
    if with_classifier:
        patterns += [_CLASSIFIER_WEIGHTS, _CLASSIFIER_CONFIG]
    adapter_dir = fetch_repo(xlora_model_id, patterns, revision=revision, token=token)

    paths.adapters = [
        AdapterPaths(
            name=name,
            config=_require(adapter_dir / name / _ADAPTER_CONFIG),
            weights=_require(adapter_dir / name / _ADAPTER_WEIGHTS),
        )
        for name in ordering.adapters
    ]
    if with_classifier:
        paths.classifier_weights = _require(adapter_dir / _CLASSIFIER_WEIGHTS)
        paths.classifier_config = _require(adapter_dir / _CLASSIFIER_CONFIG)
    paths.ordering = ordering
    return paths
