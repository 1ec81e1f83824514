"""End-to-end scheduling tests: ordering, concurrency, cancellation, reports."""

from __future__ import annotations

import pytest

from cigraph.conditions import ConditionalGate, always
from cigraph.dag import DependencyGraph
from cigraph.dsl import job, on_pull_request, on_push, pipeline, sh
from cigraph.errors import CycleError, DeclarationError, UnknownNeedError
from cigraph.executor import CommandResult
from cigraph.matrix import expand_all
from cigraph.model import Event, EventKind, InstanceId, Outcome
from cigraph.runner import plan_pipeline, run_pipeline
from cigraph.scheduler import Scheduler
from cigraph.settings import Settings
from cigraph.ui.console import Console

from conftest import FakeRunner


def settings(**kwargs) -> Settings:
    return Settings(**{"max_workers": 4, **kwargs})


def overlap(a, b) -> bool:
    return a.started_at < b.finished_at and b.started_at < a.finished_at


def ci_pipeline():
    """Same shape as the bundled cigraph.yml, with fake commands."""
    rust = {"rust": ["stable", "1.59.0"]}
    return pipeline(
        job("check", sh("check", "check ${{ matrix.rust }}"), matrix=rust),
        job("test", sh("test", "test ${{ matrix.rust }}"), matrix=rust),
        job("fmt", sh("fmt", "fmt ${{ matrix.rust }}"), matrix=rust),
        job("clippy", sh("clippy", "clippy ${{ matrix.rust }}"), matrix=rust),
        job("tarpaulin", sh("tarpaulin", "tarpaulin"), matrix={"rust": ["stable"]}),
        job(
            "publish",
            sh("publish", "cargo publish", when="is_tag()", secrets={"CARGO_REGISTRY_TOKEN": "PUBLISH_SECRET"}),
            sh("dry-run", "cargo publish --dry-run", when="!is_tag()", secrets={"CARGO_REGISTRY_TOKEN": "PUBLISH_SECRET"}),
            needs=["check", "test", "fmt", "clippy", "tarpaulin"],
        ),
        name="ci",
        push=on_push(tags=["[0-9]+.[0-9]+.[0-9]+", "v[0-9]+.[0-9]+.[0-9]+"], branches=["main"]),
        pull_request=on_pull_request(branches=["main", "master"], types=["opened", "synchronize"]),
    )


# ── Happy path ───────────────────────────────────────────────────────────────


class TestRun:
    def test_all_green(self, make_executor, tag_push):
        runner = FakeRunner()
        report = run_pipeline(
            ci_pipeline(), tag_push,
            settings=settings(),
            executor=make_executor(runner, {"PUBLISH_SECRET": "tok"}),
        )
        assert report.outcome is Outcome.SUCCESS
        assert report.exit_code == 0
        assert len(report.jobs) == 10
        assert all(r.outcome is Outcome.SUCCESS for r in report.jobs.values())
        assert runner.commands[-1] == "cargo publish"
        assert "check 1.59.0" in runner.commands

    def test_report_order_follows_declaration(self, make_executor, tag_push):
        report = run_pipeline(
            ci_pipeline(), tag_push, settings=settings(),
            executor=make_executor(FakeRunner(), {"PUBLISH_SECRET": "tok"}),
        )
        names = [str(n) for n in report.jobs]
        assert names[0] == "check (rust=stable)"
        assert names[-1] == "publish"
        assert report["publish"].outcome is Outcome.SUCCESS
        assert len(report.by_template("check")) == 2

    def test_branch_push_runs_dry_run(self, make_executor, branch_push):
        runner = FakeRunner()
        report = run_pipeline(
            ci_pipeline(), branch_push, settings=settings(),
            executor=make_executor(runner, {"PUBLISH_SECRET": "tok"}),
        )
        assert report.outcome is Outcome.SUCCESS
        assert "cargo publish --dry-run" in runner.commands
        assert "cargo publish" not in runner.commands
        steps = report["publish"].steps
        assert [s.outcome for s in steps] == [Outcome.SKIPPED, Outcome.SUCCESS]

    def test_dependents_start_after_dependencies(self, make_executor, tag_push):
        report = run_pipeline(
            ci_pipeline(), tag_push, settings=settings(),
            executor=make_executor(FakeRunner(delay=0.01), {"PUBLISH_SECRET": "tok"}),
        )
        publish = report["publish"]
        for node, rec in report.jobs.items():
            if node.template != "publish":
                assert rec.finished_at <= publish.started_at

    def test_not_triggered(self, make_executor):
        runner = FakeRunner()
        report = run_pipeline(
            ci_pipeline(), Event(kind=EventKind.PUSH, ref="refs/heads/feature/foo"),
            settings=settings(), executor=make_executor(runner),
        )
        assert report.triggered is False
        assert report.outcome is Outcome.SKIPPED
        assert report.exit_code == 0
        assert runner.calls == []

    def test_display_name_in_report_and_console(self, make_executor, branch_push, capsys):
        p = pipeline(
            job("check", sh("c", "c"), matrix={"rust": ["stable"]}, display_name="Check"),
            job("lint", sh("l", "l"), needs=["check"]),
            push=on_push(),
        )
        report = run_pipeline(
            p, branch_push, settings=settings(), executor=make_executor(FakeRunner()), console=Console()
        )
        assert report["check (rust=stable)"].title == "Check (rust=stable)"
        assert report.to_dict()["jobs"]["check (rust=stable)"]["name"] == "Check (rust=stable)"
        assert report.to_dict()["jobs"]["lint"]["name"] == "lint"
        assert "Name: Check (rust=stable)" in capsys.readouterr().out

    def test_report_to_dict(self, make_executor, tag_push):
        report = run_pipeline(
            ci_pipeline(), tag_push, settings=settings(),
            executor=make_executor(FakeRunner(), {"PUBLISH_SECRET": "tok"}),
        )
        data = report.to_dict()
        assert data["outcome"] == "success"
        assert data["jobs"]["check (rust=stable)"]["matrix"] == {"rust": "stable"}
        assert data["event"]["ref"] == "refs/tags/1.2.3"


# ── Failures and cancellation ────────────────────────────────────────────────


class TestFailures:
    def test_failure_cancels_publish(self, make_executor, tag_push):
        runner = FakeRunner({"clippy 1.59.0": CommandResult(101, "warning: unused\n")})
        report = run_pipeline(
            ci_pipeline(), tag_push, settings=settings(),
            executor=make_executor(runner, {"PUBLISH_SECRET": "tok"}),
        )
        assert report.outcome is Outcome.FAILURE
        assert report.exit_code == 1
        assert report["clippy (rust=1.59.0)"].outcome is Outcome.FAILURE
        assert report["publish"].outcome is Outcome.CANCELLED
        assert "clippy (rust=1.59.0)" in report["publish"].reason
        assert "cargo publish" not in runner.commands
        # unrelated jobs still ran
        assert report["test (rust=1.59.0)"].outcome is Outcome.SUCCESS

    def test_transitive_cancellation(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"]),
            job("c", sh("c", "c"), needs=["b"]),
            push=on_push(),
        )
        runner = FakeRunner({"a": 1})
        report = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(runner))
        assert report.outcomes == {
            InstanceId("a"): Outcome.FAILURE,
            InstanceId("b"): Outcome.CANCELLED,
            InstanceId("c"): Outcome.CANCELLED,
        }
        assert runner.commands == ["a"]

    def test_always_job_runs_after_failure(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("notify", sh("notify", "notify"), needs=["a"], when=always()),
            push=on_push(),
        )
        runner = FakeRunner({"a": 1})
        report = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(runner))
        assert report["notify"].outcome is Outcome.SUCCESS
        assert report.outcome is Outcome.FAILURE

    @pytest.mark.parametrize("policy,expected", [(False, Outcome.CANCELLED), (True, Outcome.SUCCESS)])
    def test_cancelled_upstream_policy(self, make_executor, branch_push, policy, expected):
        p = pipeline(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"]),
            job("cleanup", sh("cleanup", "cleanup"), needs=["b"], when=always()),
            push=on_push(),
        )
        report = run_pipeline(
            p, branch_push,
            settings=settings(cancelled_satisfies_needs=policy),
            executor=make_executor(FakeRunner({"a": 1})),
        )
        assert report["b"].outcome is Outcome.CANCELLED
        assert report["cleanup"].outcome is expected

    def test_negated_success_runs_only_after_failure(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("notify", sh("notify", "notify"), needs=["a"], when="!success()"),
            push=on_push(),
        )
        failed = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(FakeRunner({"a": 1})))
        assert failed["notify"].outcome is Outcome.SUCCESS

        green = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(FakeRunner()))
        assert green["notify"].outcome is Outcome.SKIPPED

    def test_success_or_tag_runs_on_tag_after_failure(self, make_executor, tag_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"], when="success() || is_tag()"),
            push=on_push(tags=["*"]),
        )
        runner = FakeRunner({"a": 1})
        report = run_pipeline(p, tag_push, settings=settings(), executor=make_executor(runner))
        assert report["b"].outcome is Outcome.SUCCESS
        assert "b" in runner.commands

    def test_cancelled_condition_sees_cancelled_upstream(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"]),
            job("report", sh("report", "report"), needs=["b"], when="cancelled()"),
            push=on_push(),
        )
        report = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(FakeRunner({"a": 1})))
        assert report["b"].outcome is Outcome.CANCELLED
        assert report["report"].outcome is Outcome.SUCCESS

    def test_skipped_upstream_cancels_but_run_succeeds(self, make_executor, branch_push):
        p = pipeline(
            job("release", sh("r", "release"), when="is_tag()"),
            job("announce", sh("a", "announce"), needs=["release"]),
            push=on_push(),
        )
        runner = FakeRunner()
        report = run_pipeline(p, branch_push, settings=settings(), executor=make_executor(runner))
        assert report["release"].outcome is Outcome.SKIPPED
        assert report["announce"].outcome is Outcome.CANCELLED
        assert report.outcome is Outcome.SUCCESS
        assert runner.calls == []

    def test_crashing_runner_recorded_as_failure(self, make_executor, branch_push):
        def explode(cmd, env):
            raise RuntimeError("runner exploded")

        p = pipeline(job("a", sh("a", "a")), job("b", sh("b", "b")), push=on_push())
        report = run_pipeline(
            p, branch_push, settings=settings(), executor=make_executor(FakeRunner({"a": explode}))
        )
        assert report["a"].outcome is Outcome.FAILURE
        assert "runner exploded" in report["a"].reason
        assert report["b"].outcome is Outcome.SUCCESS

    def test_fail_fast(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"]),
            job("c", sh("c", "c"), needs=["b"]),
            job("d", sh("d", "d"), needs=["c"]),
            job("x", sh("x", "x")),
            job("y", sh("y", "y"), needs=["x"], when=always()),
            push=on_push(),
        )
        runner = FakeRunner({"x": 1})
        report = run_pipeline(
            p, branch_push, settings=settings(max_workers=1, fail_fast=True), executor=make_executor(runner)
        )
        assert report["x"].outcome is Outcome.FAILURE
        assert report["y"].outcome is Outcome.CANCELLED
        assert "y" not in runner.commands
        assert all(r.outcome is not None for r in report.jobs.values())
        assert len(report.jobs) == 6


# ── Secrets across jobs ──────────────────────────────────────────────────────


class TestSecretIsolation:
    def leaky_pipeline(self):
        return pipeline(
            job("check", sh("dump", 'echo "env: $PUBLISH_SECRET"')),
            job(
                "publish",
                sh("publish", 'echo "token: $CARGO_REGISTRY_TOKEN"', secrets={"CARGO_REGISTRY_TOKEN": "PUBLISH_SECRET"}),
                needs=["check"],
            ),
            push=on_push(),
        )

    def test_inherited_secret_never_reaches_other_jobs(self, monkeypatch, tmp_path, branch_push):
        monkeypatch.setenv("PUBLISH_SECRET", "S3CRET")
        report = run_pipeline(self.leaky_pipeline(), branch_push, settings=settings(), workdir=str(tmp_path))
        assert report.outcome is Outcome.SUCCESS
        assert report["check"].steps[0].output == "env: \n"
        assert report["publish"].steps[0].output == "token: ***\n"
        assert "S3CRET" not in str(report.to_dict())

    def test_secret_echoed_by_undeclaring_job_is_masked(self, make_executor, branch_push):
        runner = FakeRunner({'echo "env: $PUBLISH_SECRET"': CommandResult(0, "env: S3CRET\n")})
        report = run_pipeline(
            self.leaky_pipeline(), branch_push,
            settings=settings(),
            executor=make_executor(runner, {"PUBLISH_SECRET": "S3CRET"}),
        )
        assert report["check"].steps[0].output == "env: ***\n"


# ── Configuration errors ─────────────────────────────────────────────────────


class TestConfigurationErrors:
    def test_cycle_aborts_before_dispatch(self, make_executor, branch_push):
        p = pipeline(
            job("a", sh("a", "a"), needs=["b"]),
            job("b", sh("b", "b"), needs=["a"]),
            job("free", sh("free", "free")),
            push=on_push(),
        )
        runner = FakeRunner()
        with pytest.raises(CycleError):
            run_pipeline(p, branch_push, settings=settings(), executor=make_executor(runner))
        assert runner.calls == []

    def test_unknown_need_even_when_not_triggered(self, make_executor):
        p = pipeline(job("a", sh("a", "a"), needs=["ghost"]), push=on_push(tags=["v*"]))
        runner = FakeRunner()
        with pytest.raises(UnknownNeedError):
            run_pipeline(
                p, Event(kind=EventKind.PUSH, ref="refs/heads/main"),
                settings=settings(), executor=make_executor(runner),
            )
        assert runner.calls == []

    def test_fully_excluded_matrix_named_in_error(self, make_executor, branch_push):
        p = pipeline(
            job("build", sh("b", "b"), matrix={"os": ["linux"]}, exclude=[{"os": "linux"}]),
            job("ship", sh("s", "s"), needs=["build"]),
            push=on_push(),
        )
        runner = FakeRunner()
        with pytest.raises(DeclarationError, match="build"):
            run_pipeline(p, branch_push, settings=settings(), executor=make_executor(runner))
        assert runner.calls == []

    def test_plan_levels(self, tag_push):
        plan = plan_pipeline(ci_pipeline(), tag_push)
        assert plan.trigger.run
        assert len(plan.levels) == 2
        assert plan.levels[1] == ["publish"]


# ── Concurrency ──────────────────────────────────────────────────────────────


class TestConcurrency:
    def _independent(self):
        return pipeline(
            job("left", sh("left", "left")),
            job("right", sh("right", "right")),
            push=on_push(),
        )

    def test_independent_jobs_overlap(self, make_executor, branch_push):
        report = run_pipeline(
            self._independent(), branch_push,
            settings=settings(max_workers=2),
            executor=make_executor(FakeRunner(delay=0.3)),
        )
        assert overlap(report["left"], report["right"])

    def test_concurrency_limit_serializes(self, make_executor, branch_push):
        report = run_pipeline(
            self._independent(), branch_push,
            settings=settings(max_workers=1),
            executor=make_executor(FakeRunner(delay=0.05)),
        )
        assert not overlap(report["left"], report["right"])

    def test_every_instance_terminal_once(self, make_executor, branch_push):
        instances = expand_all(ci_pipeline().jobs)
        graph = DependencyGraph.build(instances)
        scheduler = Scheduler(
            graph,
            ConditionalGate(branch_push),
            make_executor(FakeRunner({"fmt stable": 1}), {"PUBLISH_SECRET": "tok"}),
            max_workers=3,
        )
        report = scheduler.run()
        assert graph.is_finished()
        assert set(report.outcomes()) == {i.id for i in instances}

    def test_invalid_worker_count(self, make_executor, branch_push):
        graph = DependencyGraph.build(expand_all([job("a", sh("a", "a"))]))
        with pytest.raises(ValueError):
            Scheduler(graph, ConditionalGate(branch_push), make_executor(FakeRunner()), max_workers=0)
