"""Tests for loading pipeline declarations."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from cigraph.conditions import IsTag, Not
from cigraph.errors import ConditionSyntaxError, DeclarationError, PatternError
from cigraph.loader import load_workflow, parse_pipeline
from cigraph.model import Event, EventKind

REPO_WORKFLOW = Path(__file__).resolve().parent.parent / "cigraph.yml"


def write(tmp_path: Path, body: str, name: str = "ci.yml") -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


# ── Bundled declaration ──────────────────────────────────────────────────────


class TestBundledWorkflow:
    @pytest.fixture
    def pipeline(self):
        return load_workflow(REPO_WORKFLOW)

    def test_jobs(self, pipeline):
        assert [j.name for j in pipeline.jobs] == ["check", "test", "fmt", "clippy", "tarpaulin", "publish"]
        assert pipeline.job("check").display_name == "Check"

    def test_matrix(self, pipeline):
        (axis,) = pipeline.job("check").axes
        assert axis.name == "rust"
        assert axis.values == ("stable", "1.59.0")

    def test_publish_needs_everything(self, pipeline):
        assert pipeline.job("publish").needs == ("check", "test", "fmt", "clippy", "tarpaulin")

    def test_publish_step_conditions(self, pipeline):
        real, dry = pipeline.job("publish").steps
        assert isinstance(real.when, IsTag)
        assert isinstance(dry.when, Not)
        assert real.secrets == {"CARGO_REGISTRY_TOKEN": "PUBLISH_SECRET"}

    def test_unnamed_step_uses_command(self, pipeline):
        assert pipeline.job("fmt").steps[1].name.startswith("rustup component add rustfmt")

    def test_triggers(self, pipeline):
        rules = pipeline.triggers
        assert rules.should_run(Event(kind=EventKind.PUSH, ref="1.2.3"))
        assert rules.should_run(Event(kind=EventKind.PUSH, ref="refs/tags/v0.3.0-beta"))
        assert not rules.should_run(Event(kind=EventKind.PUSH, ref="feature/foo"))
        assert rules.should_run(
            Event(kind=EventKind.PULL_REQUEST, ref="x", base_ref="main", action="opened")
        )
        assert not rules.should_run(
            Event(kind=EventKind.PULL_REQUEST, ref="x", base_ref="develop", action="opened")
        )


# ── Schema ───────────────────────────────────────────────────────────────────


class TestSchema:
    def test_minimal(self, tmp_path):
        p = load_workflow(write(tmp_path, """
            on: push
            jobs:
              build:
                steps:
                  - run: make
        """))
        assert p.name == "pipeline"
        assert p.triggers.should_run(Event(kind=EventKind.PUSH, ref="refs/heads/x"))

    def test_needs_as_string_and_env_coercion(self):
        p = parse_pipeline({
            "on": {"manual": None},
            "jobs": {
                "a": {"steps": [{"run": "a"}]},
                "b": {"needs": "a", "env": {"N": 3}, "steps": [{"run": "b", "timeout": 5}]},
            },
        })
        assert p.job("b").needs == ("a",)
        assert p.job("b").env == {"N": "3"}
        assert p.job("b").steps[0].timeout == 5
        assert p.triggers.manual

    def test_matrix_exclude(self):
        p = parse_pipeline({
            "jobs": {
                "t": {
                    "matrix": {"os": ["linux", "mac"], "py": [3, 4], "exclude": [{"os": "mac", "py": 3}]},
                    "steps": [{"run": "t"}],
                }
            },
        })
        assert p.job("t").exclude == ({"os": "mac", "py": "3"},)
        assert p.job("t").axes[1].values == ("3", "4")

    @pytest.mark.parametrize(
        "doc",
        [
            {"jobs": {}},
            {"jobs": {"a": {"steps": []}}},
            {"jobs": {"a": {"steps": [{"name": "no command"}]}}},
            {"jobs": {"a": {"runs-on": "ubuntu", "steps": [{"run": "x"}]}}},
            {"jobs": {"a": {"matrix": {"x": []}, "steps": [{"run": "x"}]}}},
            {"on": {"schedule": {}}, "jobs": {"a": {"steps": [{"run": "x"}]}}},
            ["not", "a", "mapping"],
        ],
    )
    def test_invalid_documents(self, doc):
        with pytest.raises(DeclarationError):
            parse_pipeline(doc)

    def test_bad_condition(self):
        with pytest.raises(ConditionSyntaxError):
            parse_pipeline({"jobs": {"a": {"if": "is_tag(", "steps": [{"run": "x"}]}}})

    def test_bad_trigger_pattern(self):
        with pytest.raises(PatternError):
            parse_pipeline({"on": {"push": {"tags": ["[0-9"]}}, "jobs": {"a": {"steps": [{"run": "x"}]}}})

    def test_broken_yaml(self, tmp_path):
        with pytest.raises(DeclarationError):
            load_workflow(write(tmp_path, "jobs: [unclosed\n"))


# ── Files ────────────────────────────────────────────────────────────────────


class TestFiles:
    def test_python_workflow(self, tmp_path):
        path = write(tmp_path, """
            from cigraph.dsl import pipeline, job, sh, on_push

            def workflow():
                return pipeline(job("lint", sh("Ruff", "ruff check .")), push=on_push(), name="py")
        """, name="cigraph_workflow.py")
        p = load_workflow(path)
        assert p.name == "py"
        assert p.jobs[0].steps[0].run == "ruff check ."

    def test_python_workflow_wrong_type(self, tmp_path):
        path = write(tmp_path, "PIPELINE = []\n", name="bad_workflow.py")
        with pytest.raises(DeclarationError):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(DeclarationError):
            load_workflow(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path):
        with pytest.raises(DeclarationError):
            load_workflow(write(tmp_path, "{}", name="ci.json"))
