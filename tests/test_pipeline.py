"""
Test Suite: Agent Flow Pipeline
──────────────────────────────────
Unit and end-to-end tests for the step sequence, its fail-fast
semantics and the run record.
"""

import json
import logging
import subprocess
import sys
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_flow.cli import setup_logging
from agent_flow.config import PipelineConfig
from agent_flow.credentials import CredentialSet
from agent_flow.errors import StepError
from agent_flow.events import EventKind, PullRequestEvent
from agent_flow.github_client import NotificationResult
from agent_flow.pipeline import Pipeline, RunState
from agent_flow.steps import (
    AcknowledgeStep,
    CheckoutStep,
    DelegateStep,
    InstallStep,
    RunContext,
    SetupStep,
    StepStatus,
    parse_major_version,
)


# ── Test Doubles ──────────────────────────────────────────────────────────

SECRETS = {
    "OPENAI_API_KEY": "sk-openai-test-value-123",
    "ANTHROPIC_API_KEY": "sk-ant-test-value-456",
    "LLM_PROVIDER": "anthropic",
    "GITHUB_TOKEN": "ghs_testtoken789",
}


class FakeRunner:
    """Stands in for subprocess.run; records every call."""

    def __init__(self, exit_codes=None, version_output="v18.19.0\n"):
        self.exit_codes = exit_codes or {}
        self.version_output = version_output
        self.calls = []

    def __call__(self, argv, cwd=None, env=None, timeout=None, check=False,
                 capture_output=False, text=False):
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "timeout": timeout})
        key = " ".join(argv[:2])
        code = self.exit_codes.get(key, self.exit_codes.get(argv[0], 0))
        stdout = self.version_output if capture_output else None
        return subprocess.CompletedProcess(argv, code, stdout=stdout, stderr=None)

    def commands(self):
        return [" ".join(c["argv"]) for c in self.calls]

    def ran(self, prefix):
        return any(cmd.startswith(prefix) for cmd in self.commands())


class FakeClient:
    """Stands in for GitHubClient; returns a fixed notification result."""

    instances = []

    def __init__(self, token, api_url="", timeout=0.0, result=None):
        self.token = token
        self.api_url = api_url
        self.posted = []
        self.closed = False
        self.result = result or NotificationResult.success(201)
        FakeClient.instances.append(self)

    def post_status_comment(self, repository, number, body):
        self.posted.append((repository, number, body))
        return self.result

    def close(self):
        self.closed = True


def failing_client(status_code=500):
    def factory(token, api_url="", timeout=0.0):
        return FakeClient(
            token, api_url, timeout,
            result=NotificationResult.failure(f"unexpected status {status_code}", status_code),
        )
    return factory


def make_event(branch="main", kind=EventKind.OPENED, number=42):
    return PullRequestEvent(
        repository="org/repo",
        number=number,
        base_branch=branch,
        kind=kind,
        action=kind.value,
        head_sha="abc123def456",
    )


def write_lock_file(workdir: Path) -> None:
    workdir.mkdir(parents=True, exist_ok=True)
    (workdir / "package-lock.json").write_text("{}")


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.workdir = self.root / "checkout"
        self.config = PipelineConfig(workspace=self.root / "ws", log_dir=self.root / "logs")
        self.credentials = CredentialSet(SECRETS)
        FakeClient.instances = []

    def tearDown(self):
        self.tmp.cleanup()

    def make_pipeline(self, runner, client_factory=FakeClient, which=None):
        which = which or (lambda name: f"/usr/bin/{name}")
        steps = [
            AcknowledgeStep(self.config.notify, client_factory=client_factory),
            CheckoutStep(self.config.checkout, runner=runner),
            SetupStep(self.config.setup, runner=runner, which=which),
            InstallStep(self.config.install, runner=runner),
            DelegateStep(self.config.delegate, runner=runner),
        ]
        return Pipeline(self.config, steps=steps)


class TestTriggerBehaviour(PipelineTestCase):

    def test_other_branch_runs_nothing(self):
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(
            make_event(branch="develop"), self.credentials, self.workdir
        )
        self.assertEqual(outcome.state, RunState.SKIPPED)
        self.assertEqual(outcome.exit_code, 0)
        self.assertEqual(outcome.steps, [])
        self.assertEqual(runner.calls, [])
        self.assertEqual(FakeClient.instances, [])

    def test_closed_action_runs_nothing(self):
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(
            make_event(kind=EventKind.OTHER), self.credentials, self.workdir
        )
        self.assertEqual(outcome.state, RunState.SKIPPED)
        self.assertEqual(runner.calls, [])

    def test_non_pull_request_event_runs_nothing(self):
        event = replace(make_event(), event_name="push")
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(event, self.credentials, self.workdir)
        self.assertEqual(outcome.state, RunState.SKIPPED)
        self.assertEqual(runner.calls, [])

    def test_skipped_run_writes_no_record(self):
        self.make_pipeline(FakeRunner()).run(
            make_event(branch="release"), self.credentials, self.workdir
        )
        self.assertFalse((self.root / "logs").exists())


class TestStepSequence(PipelineTestCase):

    def test_full_sequence_in_order(self):
        write_lock_file(self.workdir)
        runner = FakeRunner()
        for kind in (EventKind.OPENED, EventKind.SYNCHRONIZE):
            with self.subTest(kind=kind):
                runner.calls.clear()
                outcome = self.make_pipeline(runner).run(
                    make_event(kind=kind), self.credentials, self.workdir
                )
                self.assertEqual(outcome.state, RunState.SUCCEEDED)
                self.assertEqual(outcome.exit_code, 0)
                self.assertEqual(
                    [s.name for s in outcome.steps],
                    ["acknowledge", "checkout", "setup", "install", "delegate"],
                )
                commands = runner.commands()
                self.assertTrue(commands[0].startswith("git"))
                self.assertEqual(commands[-3], "node --version")
                self.assertEqual(commands[-2], "npm ci")
                self.assertEqual(commands[-1], "npx tsx scripts/ai-flow.ts")

    def test_acknowledgment_posts_fixed_message(self):
        write_lock_file(self.workdir)
        self.make_pipeline(FakeRunner()).run(make_event(), self.credentials, self.workdir)
        client = FakeClient.instances[0]
        self.assertEqual(client.token, SECRETS["GITHUB_TOKEN"])
        self.assertEqual(len(client.posted), 1)
        repo, number, body = client.posted[0]
        self.assertEqual((repo, number), ("org/repo", 42))
        self.assertIn("AI Agent is starting up", body)

    def test_notification_failure_does_not_stop_run(self):
        write_lock_file(self.workdir)
        runner = FakeRunner()
        outcome = self.make_pipeline(runner, client_factory=failing_client(502)).run(
            make_event(), self.credentials, self.workdir
        )
        self.assertEqual(outcome.state, RunState.SUCCEEDED)
        self.assertEqual(outcome.exit_code, 0)
        acknowledge = outcome.step("acknowledge")
        self.assertEqual(acknowledge.status, StepStatus.FAILED)
        self.assertIn("unexpected status 502", acknowledge.message)
        self.assertTrue(runner.ran("git"))
        self.assertTrue(runner.ran("npx tsx"))

    def test_install_failure_skips_delegate(self):
        write_lock_file(self.workdir)
        runner = FakeRunner(exit_codes={"npm ci": 1})
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.state, RunState.FAILED)
        self.assertEqual(outcome.failed_step, "install")
        self.assertEqual(outcome.exit_code, 1)
        self.assertFalse(runner.ran("npx"))
        self.assertIsNone(outcome.step("delegate"))

    def test_missing_lock_file_fails_before_install(self):
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.failed_step, "install")
        self.assertIn("package-lock.json", outcome.reason)
        self.assertFalse(runner.ran("npm"))
        self.assertFalse(runner.ran("npx"))

    def test_checkout_failure_is_fatal(self):
        runner = FakeRunner(exit_codes={"git fetch": 128})
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.state, RunState.FAILED)
        self.assertEqual(outcome.failed_step, "checkout")
        self.assertEqual(outcome.exit_code, 128)
        self.assertFalse(runner.ran("node"))

    def test_unwritable_workdir_fails_checkout(self):
        blocker = self.root / "blocker"
        blocker.write_text("not a directory")
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(
            make_event(), self.credentials, blocker / "sub"
        )
        self.assertEqual(outcome.state, RunState.FAILED)
        self.assertEqual(outcome.failed_step, "checkout")
        self.assertEqual(outcome.exit_code, 1)
        self.assertEqual(runner.calls, [])
        self.assertEqual(len(list((self.root / "logs").glob("run_pr42_*.json"))), 1)

    def test_bad_clone_url_fails_run(self):
        self.config = replace(
            self.config,
            checkout=replace(self.config.checkout, clone_url="https://{host}/{repository}.git"),
        )
        runner = FakeRunner()
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.state, RunState.FAILED)
        self.assertEqual(outcome.failed_step, "checkout")
        self.assertIn("clone_url", outcome.reason)
        self.assertFalse(runner.ran("git"))

    def test_missing_runtime_is_fatal(self):
        write_lock_file(self.workdir)
        runner = FakeRunner()
        outcome = self.make_pipeline(runner, which=lambda name: None).run(
            make_event(), self.credentials, self.workdir
        )
        self.assertEqual(outcome.failed_step, "setup")
        self.assertEqual(outcome.exit_code, 127)
        self.assertFalse(runner.ran("npm"))

    def test_old_runtime_is_fatal(self):
        write_lock_file(self.workdir)
        runner = FakeRunner(version_output="v16.20.2\n")
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.failed_step, "setup")
        self.assertEqual(outcome.exit_code, 1)

    def test_delegate_exit_code_propagates(self):
        write_lock_file(self.workdir)
        runner = FakeRunner(exit_codes={"npx": 3})
        outcome = self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        self.assertEqual(outcome.state, RunState.FAILED)
        self.assertEqual(outcome.failed_step, "delegate")
        self.assertEqual(outcome.exit_code, 3)

    def test_delegate_receives_credentials(self):
        write_lock_file(self.workdir)
        runner = FakeRunner()
        self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        delegate_call = runner.calls[-1]
        self.assertEqual(delegate_call["argv"], ["npx", "tsx", "scripts/ai-flow.ts"])
        self.assertEqual(delegate_call["cwd"], str(self.workdir))
        for name, value in SECRETS.items():
            self.assertEqual(delegate_call["env"][name], value)

    def test_credentials_not_in_any_argv(self):
        write_lock_file(self.workdir)
        runner = FakeRunner()
        self.make_pipeline(runner).run(make_event(), self.credentials, self.workdir)
        for cmd in runner.commands():
            for value in SECRETS.values():
                self.assertNotIn(value, cmd)


class TestSteps(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.workdir = Path(self.tmp.name)
        self.ctx = RunContext(
            event=make_event(),
            workdir=self.workdir,
            credentials=CredentialSet(SECRETS),
            base_env={"PATH": "/usr/bin"},
        )

    def tearDown(self):
        self.tmp.cleanup()

    def test_checkout_commands_for_fresh_directory(self):
        step = CheckoutStep(PipelineConfig().checkout)
        commands = step.commands(self.ctx)
        self.assertEqual(commands[0], ["git", "init", "--quiet"])
        self.assertEqual(
            commands[1], ["git", "remote", "add", "origin", "https://github.com/org/repo.git"]
        )
        self.assertEqual(commands[2][-2:], ["origin", "abc123def456"])
        self.assertIn("--depth=1", commands[2])
        self.assertEqual(commands[3][-1], "FETCH_HEAD")

    def test_checkout_reuses_existing_repository(self):
        (self.workdir / ".git").mkdir()
        commands = CheckoutStep(PipelineConfig().checkout).commands(self.ctx)
        self.assertEqual(commands[0][:3], ["git", "remote", "set-url"])

    def test_checkout_without_sha_fetches_pull_ref(self):
        ctx = replace(self.ctx, event=replace(make_event(), head_sha=""))
        step = CheckoutStep(PipelineConfig().checkout)
        self.assertEqual(step.ref_for(ctx.event), "refs/pull/42/head")

    def test_checkout_token_passed_through_git_config_env(self):
        env = CheckoutStep(PipelineConfig().checkout).git_env(self.ctx)
        self.assertEqual(env["GIT_CONFIG_KEY_0"], "http.extraheader")
        self.assertTrue(env["GIT_CONFIG_VALUE_0"].startswith("AUTHORIZATION: basic "))
        self.assertNotIn(SECRETS["GITHUB_TOKEN"], env["GIT_CONFIG_VALUE_0"])
        self.assertEqual(env["GIT_TERMINAL_PROMPT"], "0")

    def test_missing_executable_reports_127(self):
        def runner(*args, **kwargs):
            raise FileNotFoundError("npx")

        (self.workdir / "package-lock.json").write_text("{}")
        step = DelegateStep(PipelineConfig().delegate, runner=runner)
        with self.assertRaises(StepError) as ctx:
            step.run(self.ctx)
        self.assertEqual(ctx.exception.exit_code, 127)

    def test_delegate_forwards_only_configured_credentials(self):
        config = replace(PipelineConfig().delegate, credentials=("LLM_PROVIDER",))
        env = DelegateStep(config).environment(self.ctx)
        self.assertEqual(env["LLM_PROVIDER"], "anthropic")
        self.assertNotIn("OPENAI_API_KEY", env)
        self.assertEqual(env["PATH"], "/usr/bin")

    def test_acknowledge_disabled(self):
        FakeClient.instances = []
        config = replace(PipelineConfig().notify, enabled=False)
        step = AcknowledgeStep(config, client_factory=FakeClient)
        with self.assertRaises(StepError) as ctx:
            step.run(self.ctx)
        self.assertIn("disabled", str(ctx.exception))
        self.assertEqual(FakeClient.instances, [])

    def test_acknowledge_closes_client(self):
        FakeClient.instances = []
        step = AcknowledgeStep(PipelineConfig().notify, client_factory=FakeClient)
        self.assertEqual(step.run(self.ctx), 0)
        self.assertTrue(FakeClient.instances[0].closed)

    def test_bad_clone_url_template_is_step_error(self):
        config = replace(PipelineConfig().checkout, clone_url="https://{host}/{repository}.git")
        with self.assertRaises(StepError) as ctx:
            CheckoutStep(config).commands(self.ctx)
        self.assertIn("clone_url", str(ctx.exception))

    def test_parse_major_version(self):
        self.assertEqual(parse_major_version("v18.19.0\n"), 18)
        self.assertEqual(parse_major_version("20.1.0"), 20)
        self.assertIsNone(parse_major_version("not a version"))


class TestRunRecord(PipelineTestCase):

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        super().tearDown()

    def test_record_written(self):
        write_lock_file(self.workdir)
        outcome = self.make_pipeline(FakeRunner()).run(
            make_event(), self.credentials, self.workdir
        )
        records = list((self.root / "logs").glob("run_pr42_*.json"))
        self.assertEqual(len(records), 1)
        with open(records[0]) as f:
            data = json.load(f)
        self.assertEqual(data["state"], "succeeded")
        self.assertEqual(data["exit_code"], outcome.exit_code)
        self.assertEqual(len(data["steps"]), 5)
        self.assertEqual(data["event"]["number"], 42)

    def test_credentials_never_persisted(self):
        log_dir = self.root / "logs"
        setup_logging("DEBUG", self.credentials.secret_values(), log_dir)
        logging.getLogger("agent_flow.test").info(
            "token is %s", SECRETS["GITHUB_TOKEN"]
        )
        write_lock_file(self.workdir)
        self.make_pipeline(FakeRunner(exit_codes={"npx": 1})).run(
            make_event(), self.credentials, self.workdir
        )
        for handler in logging.getLogger().handlers:
            handler.flush()

        persisted = "".join(p.read_text() for p in log_dir.iterdir() if p.is_file())
        self.assertIn("token is ***", persisted)
        secrets = self.credentials.secret_values()
        self.assertEqual(len(secrets), 3)
        for value in secrets:
            self.assertNotIn(value, persisted)


if __name__ == "__main__":
    unittest.main(verbosity=2)
