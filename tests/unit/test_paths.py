"""Tests for token sources and model path resolution."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from tiny_repo import ADAPTER_NAMES

import xinfer.loader.paths as paths_module
from xinfer.errors import ModelLoadError
from xinfer.loader.adapters import load_ordering
from xinfer.loader.paths import TokenSource, fetch_repo, resolve_model_paths

# ---------------------------------------------------------------------------
# TokenSource
# ---------------------------------------------------------------------------


class TestTokenSource:
    @pytest.mark.parametrize(
        ("source", "kind", "value"),
        [
            ("literal:hf_abc", "literal", "hf_abc"),
            ("env:HF_TOKEN", "env", "HF_TOKEN"),
            ("path:/tmp/token", "path", "/tmp/token"),
            ("cache", "cache", None),
            ("none", "none", None),
        ],
    )
    def test_parse(self, source: str, kind: str, value: str | None) -> None:
        assert TokenSource.parse(source) == TokenSource(kind, value)

    @pytest.mark.parametrize("source", ["literal:", "env", "cache:x", "vault:abc"])
    def test_parse_invalid(self, source: str) -> None:
        with pytest.raises(ValueError, match="Invalid token source"):
            TokenSource.parse(source)

    def test_literal(self) -> None:
        assert TokenSource.parse("literal:hf_abc").resolve() == "hf_abc"

    def test_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("XINFER_TEST_TOKEN", "hf_env")
        assert TokenSource.parse("env:XINFER_TEST_TOKEN").resolve() == "hf_env"

    def test_env_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("XINFER_TEST_TOKEN", raising=False)
        assert TokenSource.parse("env:XINFER_TEST_TOKEN").resolve() is None

    def test_path(self, tmp_path: Path) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("hf_file\n")
        assert TokenSource.parse(f"path:{token_file}").resolve() == "hf_file"

    def test_path_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError, match="token file"):
            TokenSource.parse(f"path:{tmp_path / 'absent'}").resolve()

    def test_cache(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(paths_module, "get_token", lambda: "hf_cached")
        assert TokenSource.parse("cache").resolve() == "hf_cached"

    def test_none(self) -> None:
        assert TokenSource.parse("none").resolve() is None


# ---------------------------------------------------------------------------
# fetch_repo
# ---------------------------------------------------------------------------


class TestFetchRepo:
    def test_local_directory_returned_as_is(self, tmp_path: Path) -> None:
        assert fetch_repo(str(tmp_path), ["*"]) == tmp_path

    def test_hub_download_restricted_to_patterns(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[dict[str, Any]] = []

        def fake_snapshot_download(repo_id: str, **kwargs: Any) -> str:
            calls.append({"repo_id": repo_id, **kwargs})
            return str(tmp_path)

        monkeypatch.setattr(paths_module, "snapshot_download", fake_snapshot_download)
        result = fetch_repo("org/model", ["config.json"], revision="v1", token="hf_x")
        assert result == tmp_path
        assert calls == [
            {
                "repo_id": "org/model",
                "revision": "v1",
                "token": "hf_x",
                "allow_patterns": ["config.json"],
            }
        ]

    def test_download_failure_wrapped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def failing(repo_id: str, **kwargs: Any) -> str:
            raise OSError("network down")

        monkeypatch.setattr(paths_module, "snapshot_download", failing)
        with pytest.raises(ModelLoadError, match="network down"):
            fetch_repo("org/model", ["*"])


# ---------------------------------------------------------------------------
# resolve_model_paths
# ---------------------------------------------------------------------------


class TestResolveModelPaths:
    def test_base_model(self, model_dir: Path) -> None:
        paths = resolve_model_paths(str(model_dir))
        assert paths.config == model_dir / "config.json"
        assert paths.tokenizer == model_dir / "tokenizer.json"
        assert paths.template == model_dir / "tokenizer_config.json"
        assert paths.weights == [model_dir / "model.safetensors"]
        assert paths.adapters is None
        assert paths.classifier_weights is None

    def test_overrides(self, model_dir: Path, tmp_path: Path) -> None:
        template = tmp_path / "template.json"
        template.write_text("{}")
        paths = resolve_model_paths(str(model_dir), chat_template=str(template))
        assert paths.template == template

    def test_missing_override(self, model_dir: Path, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError, match="required file"):
            resolve_model_paths(str(model_dir), tokenizer_json=str(tmp_path / "absent.json"))

    def test_no_weights(self, model_dir: Path) -> None:
        (model_dir / "model.safetensors").unlink()
        with pytest.raises(ModelLoadError, match="safetensors"):
            resolve_model_paths(str(model_dir))

    def test_lora_adapters(self, model_dir: Path, adapter_dir: Path) -> None:
        ordering = load_ordering(adapter_dir / "ordering.json")
        paths = resolve_model_paths(
            str(model_dir), xlora_model_id=str(adapter_dir), ordering=ordering
        )
        assert paths.adapters is not None
        assert [a.name for a in paths.adapters] == ADAPTER_NAMES
        assert paths.adapters[0].config == adapter_dir / "adapter_1" / "adapter_config.json"
        assert paths.adapters[1].weights == adapter_dir / "adapter_2" / "adapter_model.safetensors"
        assert paths.classifier_weights is None
        assert paths.ordering is ordering

    def test_xlora_classifier(self, model_dir: Path, adapter_dir: Path) -> None:
        ordering = load_ordering(adapter_dir / "ordering.json")
        paths = resolve_model_paths(
            str(model_dir),
            xlora_model_id=str(adapter_dir),
            ordering=ordering,
            with_classifier=True,
        )
        assert paths.classifier_weights == adapter_dir / "xlora_classifier.safetensors"
        assert paths.classifier_config == adapter_dir / "xlora_config.json"

    def test_missing_adapter_file(self, model_dir: Path, adapter_dir: Path) -> None:
        (adapter_dir / "adapter_2" / "adapter_model.safetensors").unlink()
        ordering = load_ordering(adapter_dir / "ordering.json")
        with pytest.raises(ModelLoadError, match="adapter_2"):
            resolve_model_paths(str(model_dir), xlora_model_id=str(adapter_dir), ordering=ordering)

    def test_ordering_without_adapter_repo(self, model_dir: Path, adapter_dir: Path) -> None:
        ordering = load_ordering(adapter_dir / "ordering.json")
        with pytest.raises(ModelLoadError, match="adapter model id"):
            resolve_model_paths(str(model_dir), ordering=ordering)
