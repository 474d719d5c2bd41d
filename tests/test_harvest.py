# Copyright (c) Syntropy Systems
"""Tests for result harvesting."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from labhand.errors import InvalidExperimentId, ResultReadError
from labhand.harvest import harvest, results_dir


class TestHarvest:
    """Scanning a finished experiment's results directory."""

    def test_missing_directory_yields_nothing(self, temp_dir: Path) -> None:
        assert list(harvest(temp_dir, "never-ran")) == []

    def test_missing_root_yields_nothing(self, temp_dir: Path) -> None:
        assert list(harvest(temp_dir / "nope", "exp-1")) == []

    def test_only_json_files_are_read(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        _ = (out / "out.json").write_text(json.dumps({"loss": 0.25}))
        _ = (out / "notes.txt").write_text("free text")

        results = list(harvest(temp_dir, "exp-1"))

        assert len(results) == 1
        assert results[0].ok
        assert results[0].payload == {"loss": 0.25}
        assert results[0].path.name == "out.json"

    def test_files_in_name_order(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        for name in ("b.json", "a.json", "c.json"):
            _ = (out / name).write_text(json.dumps({"file": name}))

        names = [r.path.name for r in harvest(temp_dir, "exp-1")]
        assert names == ["a.json", "b.json", "c.json"]

    def test_malformed_file_does_not_stop_others(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        _ = (out / "a.json").write_text("{not json")
        _ = (out / "b.json").write_text(json.dumps({"acc": 0.9}))

        results = list(harvest(temp_dir, "exp-1"))

        assert [r.ok for r in results] == [False, True]
        assert isinstance(results[0].error, ResultReadError)
        assert "invalid JSON" in str(results[0].error)
        assert results[1].payload == {"acc": 0.9}

    def test_non_object_json_is_an_error(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        _ = (out / "list.json").write_text("[1, 2, 3]")

        (result,) = list(harvest(temp_dir, "exp-1"))
        assert result.error is not None
        assert "expected a JSON object" in result.error.reason

    def test_directories_with_suffix_are_skipped(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        (out / "nested.json").mkdir(parents=True)

        assert list(harvest(temp_dir, "exp-1")) == []

    def test_custom_suffix(self, temp_dir: Path) -> None:
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        _ = (out / "metrics.result").write_text(json.dumps({"f1": 0.7}))
        _ = (out / "out.json").write_text(json.dumps({"ignored": True}))

        results = list(harvest(temp_dir, "exp-1", suffix=".result"))
        assert [r.payload for r in results] == [{"f1": 0.7}]

    def test_files_read_lazily(self, temp_dir: Path) -> None:
        """Each file is read when the generator reaches it, not up front."""
        out = results_dir(temp_dir, "exp-1")
        out.mkdir(parents=True)
        _ = (out / "a.json").write_text(json.dumps({"n": 1}))
        _ = (out / "b.json").write_text(json.dumps({"n": 2}))

        results = harvest(temp_dir, "exp-1")
        first = next(results)
        _ = (out / "b.json").write_text(json.dumps({"n": 3}))
        second = next(results)

        assert first.payload == {"n": 1}
        assert second.payload == {"n": 3}
        assert list(results) == []


class TestResultsDir:
    """Experiment IDs map to exactly one directory under the results root."""

    def test_plain_id(self, temp_dir: Path) -> None:
        assert results_dir(temp_dir, "5f3a-b2") == temp_dir / "5f3a-b2"

    @pytest.mark.parametrize("experiment_id", ["", ".", "..", "../other", "/etc", "a\x00b"])
    def test_unsafe_ids_rejected(self, temp_dir: Path, experiment_id: str) -> None:
        with pytest.raises(InvalidExperimentId):
            _ = results_dir(temp_dir, experiment_id)

    def test_absolute_id_does_not_replace_root(self, temp_dir: Path) -> None:
        elsewhere = temp_dir / "elsewhere"
        elsewhere.mkdir()
        _ = (elsewhere / "secret.json").write_text(json.dumps({"secret": 1}))

        with pytest.raises(InvalidExperimentId):
            _ = list(harvest(temp_dir / "results", str(elsewhere)))
