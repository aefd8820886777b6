import unittest
import os
import json
import platform
import shutil
import subprocess
import tempfile
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from pollci.database import Base
from pollci.exceptions import CheckoutError, ConfigurationError, InvalidTransition, NoBuildYet
from pollci.models import Build, BuildStatus, Project, utcnow
from pollci.orchestrator import Orchestrator
from pollci.project_config import ProjectConfig
from pollci.services.git_service import GitService
from pollci.services.lock_registry import LockRegistry
from pollci.services.process_service import CommandResult, ProcessService
from pollci.services.project_service import ProjectService

# In-memory DB shared by every session, including the orchestrator's worker threads
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeProcess(ProcessService):
    """Answers git commands with canned output and records every call."""

    def __init__(self, revisions=("abc123",), update_exit=0, clone_exit=0, shell_results=None):
        super().__init__()
        self.revisions = list(revisions)
        self.update_exit = update_exit
        self.clone_exit = clone_exit
        self.shell_results = shell_results or {}
        self.calls = []

    def run(self, command, cwd=None, env=None):
        self.calls.append((command, cwd, env))
        if isinstance(command, str):
            exit_code, output = self.shell_results.get(command, (0, f"ran {command}\n"))
            return CommandResult(exit_code, output)
        if command == GitService.revision():
            revision = self.revisions.pop(0) if len(self.revisions) > 1 else self.revisions[0]
            return CommandResult(0, revision + "\n")
        if command[:2] == ["git", "clone"]:
            return CommandResult(self.clone_exit, "" if self.clone_exit == 0 else "fatal: repository not found\n")
        if command[:2] in (["git", "fetch"], ["git", "reset"], ["git", "submodule"]):
            return CommandResult(self.update_exit, "" if self.update_exit == 0 else "fatal: unable to access remote\n")
        if command[:2] == ["git", "log"]:
            return CommandResult(0, "\nM\tREADME.md\nA\tlib/new.rb\n")
        if command[:2] == ["git", "show"]:
            return CommandResult(0, "alice\nbob\nalice")
        return CommandResult(0, "")

    def shell_commands(self):
        return [command for command, _, _ in self.calls if isinstance(command, str)]


class ForcingProcess(FakeProcess):
    """Requests another build from a second session while rake is running."""

    def __init__(self, session_factory, project_id, **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory
        self.project_id = project_id
        self.forced = False

    def run(self, command, cwd=None, env=None):
        if command == "rake":
            other = self.session_factory()
            try:
                ProjectService(other, self, LockRegistry()).force_build(other.get(Project, self.project_id))
                self.forced = True
            finally:
                other.close()
        return super().run(command, cwd=cwd, env=env)


class PollingCloneProcess(FakeProcess):
    """Runs a scheduler tick while the clone is in progress."""

    def __init__(self, orchestrator, **kwargs):
        super().__init__(**kwargs)
        self.orchestrator = orchestrator
        self.futures = None

    def run(self, command, cwd=None, env=None):
        if isinstance(command, list) and command[:2] == ["git", "clone"]:
            self.futures = self.orchestrator.poll(block=True)
        return super().run(command, cwd=cwd, env=env)


class LockCheckingProcess(FakeProcess):
    def __init__(self, locks, **kwargs):
        super().__init__(**kwargs)
        self.locks = locks
        self.locked_during_clone = []

    def run(self, command, cwd=None, env=None):
        if isinstance(command, list) and command[:2] == ["git", "clone"]:
            self.locked_during_clone.append(self.locks.is_locked(1))
        return super().run(command, cwd=cwd, env=env)


class SlowBuildProcess(FakeProcess):
    """Keeps rake running long enough for a second build to queue up."""

    def __init__(self, building, **kwargs):
        super().__init__(**kwargs)
        self.building = building

    def run(self, command, cwd=None, env=None):
        if command == "rake":
            self.building.set()
            time.sleep(0.3)
        return super().run(command, cwd=cwd, env=env)


class DatabaseTestCase(unittest.TestCase):
    def setUp(self):
        Base.metadata.create_all(bind=engine)
        self.db = TestingSessionLocal()
        self.temp_dir = tempfile.mkdtemp()
        self.projects_dir_patch = patch("pollci.models.PROJECTS_DIR", self.temp_dir)
        self.projects_dir_patch.start()

    def tearDown(self):
        self.projects_dir_patch.stop()
        self.db.close()
        Base.metadata.drop_all(bind=engine)
        shutil.rmtree(self.temp_dir)

    def make_project(self, name="goldberg", config=None, **kwargs):
        kwargs.setdefault("checked_out", True)
        project = Project(name=name, url="git://some.url.git", branch="master", **kwargs)
        project.config = config or ProjectConfig()
        self.db.add(project)
        self.db.commit()
        os.makedirs(project.code_path, exist_ok=True)
        return project

    def add_build(self, project, number, revision, status=BuildStatus.SUCCESS, log=None):
        build = Build(project=project, number=number, revision=revision, status=status, log=log)
        self.db.add(build)
        self.db.commit()
        return build


class TestGitService(unittest.TestCase):
    def test_revision(self):
        self.assertEqual(GitService.revision(), ["git", "rev-parse", "--verify", "HEAD"])

    def test_checkout_is_shallow_single_branch_clone(self):
        self.assertEqual(
            GitService.checkout("git://some.url.git", "some_path/code", "develop"),
            ["git", "clone", "--depth", "1", "git://some.url.git", "some_path/code", "--branch", "develop"],
        )

    def test_checkout_requires_url(self):
        with self.assertRaises(ValueError):
            GitService.checkout("", "some_path/code", "master")

    def test_update_fetches_resets_and_syncs_submodules(self):
        self.assertEqual(
            GitService.update("release"),
            [
                ["git", "fetch"],
                ["git", "reset", "--hard", "origin/release"],
                ["git", "submodule", "update", "--init", "--recursive"],
            ],
        )

    def test_change_list_range(self):
        command = GitService.change_list("old", "new")
        self.assertEqual(command[-1], "old..new")
        self.assertIn("--reverse", command)

    def test_change_list_without_previous_revision_covers_history(self):
        self.assertEqual(GitService.change_list("", "new")[-1], "new")

    def test_parse_change_list(self):
        output = "\nM\tREADME.md\n\nA\tlib/new.rb\nR100\told.rb\tnew.rb\n"
        self.assertEqual(
            GitService.parse_change_list(output),
            [("M", "README.md"), ("A", "lib/new.rb"), ("R100", "new.rb")],
        )

    def test_version_restores_file(self):
        self.assertEqual(GitService.version("pollci.json"), ["git", "checkout", "--", "pollci.json"])

    def test_authors(self):
        self.assertEqual(
            GitService.authors(["aaa", "bbb"]),
            ["git", "show", "-s", "--pretty=format:%an", "aaa..bbb"],
        )
        with self.assertRaises(ValueError):
            GitService.authors(["aaa"])

    def test_parse_authors_dedupes_in_first_seen_order(self):
        self.assertEqual(GitService.parse_authors("bob\nalice\nbob\n\ncarol\nalice"), "bob alice carol")


class TestProjectConfig(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        config = ProjectConfig()
        self.assertEqual(config.frequency, 20)
        self.assertEqual(config.task, "default")
        self.assertEqual(config.environment_variables, {})
        self.assertEqual(config.after_build, [])
        self.assertEqual(config.toolchain_version, platform.python_version())

    def test_environment_string(self):
        config = ProjectConfig(environment_variables={"A": "1", "B": "2"})
        self.assertEqual(config.environment_string(), "A=1 B=2")
        self.assertEqual(ProjectConfig().environment_string(), "")

    def test_environment_includes_toolchain_version(self):
        config = ProjectConfig(toolchain_version="3.1.4", environment_variables={"A": "1"})
        self.assertEqual(config.environment(), {"A": "1", "TOOLCHAIN_VERSION": "3.1.4"})

    def test_stored_toolchain_version_is_kept(self):
        config = ProjectConfig.from_dict({"toolchain_version": "2.7.1"})
        self.assertEqual(config.toolchain_version, "2.7.1")

    def test_dict_round_trip(self):
        config = ProjectConfig(frequency=60, task="spec", environment_variables={"X": "y"}, after_build=["notify"])
        self.assertEqual(ProjectConfig.from_dict(config.to_dict()).to_dict(), config.to_dict())

    def test_merge_file(self):
        with open(os.path.join(self.temp_dir, "pollci.json"), "w") as f:
            json.dump({"frequency": 90, "after_build": ["echo done"], "colour": "red"}, f)

        config = ProjectConfig()
        self.assertTrue(config.merge_file(self.temp_dir))
        self.assertEqual(config.frequency, 90)
        self.assertEqual(config.after_build, ["echo done"])
        self.assertFalse(hasattr(config, "colour"))

    def test_merge_file_missing(self):
        self.assertFalse(ProjectConfig().merge_file(self.temp_dir))

    def test_merge_file_invalid_json(self):
        with open(os.path.join(self.temp_dir, "pollci.json"), "w") as f:
            f.write("{not json")
        with self.assertRaises(ConfigurationError):
            ProjectConfig().merge_file(self.temp_dir)

    def test_invalid_frequency(self):
        with self.assertRaises(ConfigurationError):
            ProjectConfig.from_dict({"frequency": 0})

    def test_boolean_frequency_is_rejected(self):
        with open(os.path.join(self.temp_dir, "pollci.json"), "w") as f:
            json.dump({"frequency": True}, f)
        with self.assertRaises(ConfigurationError):
            ProjectConfig().merge_file(self.temp_dir)


class TestProjectModel(DatabaseTestCase):
    def test_path_replaces_spaces(self):
        project = Project(name="some project", url="git://some.url.git")
        self.assertEqual(project.code_path, os.path.join(self.temp_dir, "some_project", "code"))

    def test_command_without_gemfile(self):
        project = self.make_project()
        self.assertEqual(project.command(), "rake")

    def test_command_with_gemfile(self):
        project = self.make_project()
        open(os.path.join(project.code_path, "Gemfile"), "w").close()
        self.assertTrue(project.command().startswith("(bundle check || bundle install)"))
        self.assertTrue(project.command().endswith("rake"))

    def test_command_checks_gemfile_every_time(self):
        project = self.make_project()
        with patch("pollci.models.os.path.exists", side_effect=[True, False]) as mock_exists:
            self.assertTrue(project.command().startswith("(bundle check || bundle install)"))
            self.assertEqual(project.command(), "rake")
        mock_exists.assert_called_with(os.path.join(project.code_path, "Gemfile"))

    def test_custom_command_wins(self):
        project = self.make_project(custom_command="cmake")
        open(os.path.join(project.code_path, "Gemfile"), "w").close()
        self.assertEqual(project.command(), "cmake")

    def test_command_with_task(self):
        project = self.make_project(config=ProjectConfig(task="spec"))
        self.assertEqual(project.command(), "rake spec")

    def test_force_build(self):
        project = self.make_project()
        project.force_build()
        project.force_build()
        self.assertTrue(project.build_requested)

    def test_latest_build(self):
        project = self.make_project()
        self.add_build(project, 1, "aaa")
        last = self.add_build(project, 2, "bbb", status=BuildStatus.FAILED, log="boom")
        self.assertEqual(project.latest_build, last)
        self.assertEqual(project.latest_build_number, 2)
        self.assertEqual(project.latest_build_status, BuildStatus.FAILED)
        self.assertEqual(project.latest_build_log, "boom")
        self.assertIsNotNone(project.latest_build_timestamp)

    def test_latest_build_accessors_without_builds(self):
        project = self.make_project()
        self.assertIsNone(project.latest_build)
        for field in ("number", "status", "log", "timestamp"):
            with self.assertRaises(NoBuildYet):
                getattr(project, f"latest_build_{field}")

    def test_latest_build_summary_without_builds(self):
        summary = self.make_project().latest_build_summary()
        self.assertIsNone(summary["number"])
        self.assertEqual(summary["status"], "not built")
        self.assertEqual(summary["log"], "")


class TestBuildStatus(DatabaseTestCase):
    def test_lifecycle(self):
        build = self.add_build(self.make_project(), 1, "aaa", status=BuildStatus.PENDING)
        build.transition_to(BuildStatus.RUNNING)
        build.transition_to(BuildStatus.SUCCESS)
        self.assertTrue(build.finished)

    def test_terminal_status_is_final(self):
        build = self.add_build(self.make_project(), 1, "aaa", status=BuildStatus.FAILED)
        with self.assertRaises(InvalidTransition):
            build.transition_to(BuildStatus.RUNNING)
        build.append_log("hook output")
        self.assertEqual(build.log, "hook output")

    def test_pending_cannot_skip_to_success(self):
        build = self.add_build(self.make_project(), 1, "aaa", status=BuildStatus.PENDING)
        with self.assertRaises(InvalidTransition):
            build.transition_to(BuildStatus.SUCCESS)

    def test_pending_cannot_skip_to_failed(self):
        build = self.add_build(self.make_project(), 1, "aaa", status=BuildStatus.PENDING)
        with self.assertRaises(InvalidTransition):
            build.transition_to(BuildStatus.FAILED)


class TestProjectLifecycle(DatabaseTestCase):
    def test_add_project_checks_out_code(self):
        process = FakeProcess()
        project = ProjectService(self.db, process).add_project(name="some_project", url="git://some.url.git")

        self.assertEqual(self.db.query(Project).count(), 1)
        clone = process.calls[0][0]
        self.assertEqual(
            clone,
            ["git", "clone", "--depth", "1", "git://some.url.git",
             os.path.join(self.temp_dir, "some_project", "code"), "--branch", "master"],
        )
        self.assertEqual(project.config.toolchain_version, platform.python_version())

    def test_add_project_with_spaces_in_name(self):
        process = FakeProcess()
        ProjectService(self.db, process).add_project(name="some project", url="git://some.url.git")
        self.assertEqual(process.calls[0][0][5], os.path.join(self.temp_dir, "some_project", "code"))

    def test_add_project_without_url_is_rejected_before_checkout(self):
        process = FakeProcess()
        with self.assertRaises(ConfigurationError):
            ProjectService(self.db, process).add_project(name="some_project", url="")
        self.assertEqual(self.db.query(Project).count(), 0)
        self.assertEqual(process.calls, [])

    def test_add_duplicate_project(self):
        self.make_project(name="some_project")
        with self.assertRaises(ConfigurationError):
            ProjectService(self.db, FakeProcess()).add_project(name="some_project", url="git://other.git")

    def test_failed_checkout_leaves_nothing_behind(self):
        process = FakeProcess(clone_exit=128)
        with self.assertRaises(CheckoutError) as ctx:
            ProjectService(self.db, process).add_project(name="some_project", url="git://some.url.git")

        self.assertIn("repository not found", ctx.exception.output)
        self.assertEqual(self.db.query(Project).count(), 0)
        self.assertFalse(os.path.exists(os.path.join(self.temp_dir, "some_project")))

    def test_project_is_not_polled_while_cloning(self):
        orchestrator = Orchestrator(
            session_factory=TestingSessionLocal, process=FakeProcess(), locks=LockRegistry(), workers=1
        )
        self.addCleanup(orchestrator.shutdown)
        process = PollingCloneProcess(orchestrator)

        project = ProjectService(self.db, process, LockRegistry()).add_project(
            name="some_project", url="git://some.url.git"
        )

        self.assertEqual(process.futures, [])
        self.assertTrue(project.checked_out)
        self.assertEqual(self.db.query(Build).count(), 0)

        self.assertEqual(len(orchestrator.poll(block=True)), 1)
        self.db.expire_all()
        self.assertEqual(self.db.query(Build).count(), 1)

    def test_add_project_holds_the_project_lock_while_cloning(self):
        locks = LockRegistry()
        process = LockCheckingProcess(locks)
        ProjectService(self.db, process, locks).add_project(name="some_project", url="git://some.url.git")
        self.assertEqual(process.locked_during_clone, [True])

    def test_checkout_replaces_stale_working_copy(self):
        project = self.make_project()
        stale = os.path.join(project.code_path, "stale.txt")
        open(stale, "w").close()
        ProjectService(self.db, FakeProcess()).checkout(project)
        self.assertFalse(os.path.exists(stale))

    def test_checkout_failure_raises(self):
        project = self.make_project()
        with self.assertRaises(CheckoutError):
            ProjectService(self.db, FakeProcess(clone_exit=1)).checkout(project)

    def test_remove_project_deletes_record(self):
        project = self.make_project(name="project_to_be_removed")
        ProjectService(self.db, FakeProcess(), LockRegistry()).remove_project(project)
        self.assertIsNone(self.db.query(Project).filter_by(name="project_to_be_removed").first())

    def test_remove_project_deletes_builds(self):
        project = self.make_project()
        build_id = self.add_build(project, 1, "aaa").id
        ProjectService(self.db, FakeProcess(), LockRegistry()).remove_project(project)
        self.assertIsNone(self.db.query(Build).filter_by(id=build_id).first())

    @patch("pollci.services.project_service.shutil.rmtree")
    def test_remove_project_deletes_working_copy(self, mock_rmtree):
        project = self.make_project()
        path = project.path
        ProjectService(self.db, FakeProcess(), LockRegistry()).remove_project(project)
        mock_rmtree.assert_called_once_with(path)


class TestBuildDecision(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.service = ProjectService(self.db, FakeProcess(), LockRegistry())

    def test_builds_if_there_are_no_builds(self):
        self.assertTrue(self.service.build_required(self.make_project()))

    def test_builds_if_requested(self):
        project = self.make_project()
        self.add_build(project, 1, "aaa")
        project.build_requested = True
        self.assertTrue(self.service.build_required(project, "aaa"))

    def test_builds_if_upstream_moved(self):
        project = self.make_project()
        self.add_build(project, 1, "aaa")
        self.assertTrue(self.service.build_required(project, "bbb"))

    def test_no_build_when_up_to_date(self):
        project = self.make_project()
        self.add_build(project, 1, "aaa")
        self.assertFalse(self.service.build_required(project, "aaa"))
        self.assertFalse(self.service.build_required(project))

    def test_force_build_persists(self):
        project = self.make_project()
        self.service.force_build(project)
        self.db.expire_all()
        self.assertTrue(self.db.query(Project).first().build_requested)


class TestRunBuild(DatabaseTestCase):
    def run_build(self, project, process):
        return ProjectService(self.db, process, LockRegistry()).run_build(project)

    def test_no_changes_and_no_request_is_a_noop(self):
        project = self.make_project()
        self.add_build(project, 1, "abc")
        process = FakeProcess(revisions=["abc", "abc"])

        self.assertIsNone(self.run_build(project, process))
        self.assertEqual(self.db.query(Build).count(), 1)
        self.assertEqual(process.shell_commands(), [])

    def test_first_build(self):
        project = self.make_project()
        process = FakeProcess(revisions=["aaa", "bbb"])

        build = self.run_build(project, process)

        self.assertEqual(self.db.query(Build).count(), 1)
        self.assertEqual(build.number, 1)
        self.assertEqual(build.previous_build_revision, "")
        self.assertEqual(build.revision, "bbb")
        self.assertEqual(build.status, BuildStatus.SUCCESS)
        self.assertEqual(build.change_list, "M\tREADME.md\nA\tlib/new.rb")
        self.assertIn("ran rake", build.log)

    def test_build_number_follows_latest_build(self):
        project = self.make_project()
        self.add_build(project, 5, "old_sha")
        process = FakeProcess(revisions=["old_sha", "new_sha"])

        build = self.run_build(project, process)

        self.assertEqual(build.number, 6)
        self.assertEqual(build.previous_build_revision, "old_sha")
        self.assertEqual(build.authors, "alice bob")
        self.assertIn(["git", "log", "--reverse", "--name-status", "--pretty=format:", "old_sha..new_sha"],
                      [command for command, _, _ in process.calls])

    def test_forced_build_without_changes(self):
        project = self.make_project()
        self.add_build(project, 1, "abc")
        project.force_build()
        self.db.commit()

        build = self.run_build(project, FakeProcess(revisions=["abc", "abc"]))

        self.assertIsNotNone(build)
        self.assertEqual(build.number, 2)
        self.db.expire_all()
        self.assertFalse(self.db.query(Project).first().build_requested)

    def test_failed_build_still_clears_request(self):
        project = self.make_project()
        project.force_build()
        self.db.commit()

        build = self.run_build(project, FakeProcess(shell_results={"rake": (1, "1 failure\n")}))

        self.assertEqual(build.status, BuildStatus.FAILED)
        self.assertIn("1 failure", build.log)
        self.assertFalse(project.build_requested)

    def test_environment_and_toolchain_are_recorded(self):
        config = ProjectConfig(toolchain_version="3.2.0", environment_variables={"A": "1", "B": "2"})
        project = self.make_project(config=config)
        process = FakeProcess()

        build = self.run_build(project, process)

        self.assertEqual(build.environment_string, "A=1 B=2")
        self.assertEqual(build.toolchain_version, "3.2.0")
        command, cwd, env = [call for call in process.calls if call[0] == "rake"][0]
        self.assertEqual(cwd, project.code_path)
        self.assertEqual(env, {"A": "1", "B": "2", "TOOLCHAIN_VERSION": "3.2.0"})

    def test_hooks_run_in_order_after_failed_build(self):
        config = ProjectConfig(after_build=["notify", "cleanup"])
        project = self.make_project(config=config)
        process = FakeProcess(shell_results={"rake": (1, "broken\n"), "notify": (2, "smtp down\n")})

        build = self.run_build(project, process)

        self.assertEqual(process.shell_commands(), ["rake", "notify", "cleanup"])
        self.assertEqual(build.status, BuildStatus.FAILED)
        self.assertIn("$ notify\nsmtp down", build.log)
        self.assertIn("$ cleanup", build.log)

    def test_hook_failure_keeps_success(self):
        project = self.make_project(config=ProjectConfig(after_build=["notify"]))
        build = self.run_build(project, FakeProcess(shell_results={"notify": (1, "")}))
        self.assertEqual(build.status, BuildStatus.SUCCESS)

    def test_update_failure_is_a_failed_build(self):
        project = self.make_project()
        process = FakeProcess(update_exit=1)

        build = self.run_build(project, process)

        self.assertEqual(build.status, BuildStatus.FAILED)
        self.assertTrue(build.log.startswith("SCM update failed"))
        self.assertIsNotNone(build.started_at)
        self.assertEqual(process.shell_commands(), [])

    def test_repeated_update_failure_is_recorded_once(self):
        project = self.make_project()
        self.run_build(project, FakeProcess(update_exit=1))
        self.assertIsNone(self.run_build(project, FakeProcess(update_exit=1)))
        self.assertEqual(self.db.query(Build).count(), 1)

    def test_repository_config_file_is_applied(self):
        project = self.make_project()
        with open(os.path.join(project.code_path, "pollci.json"), "w") as f:
            json.dump({"environment_variables": {"RAILS_ENV": "test"}}, f)
        process = FakeProcess()

        build = self.run_build(project, process)

        self.assertIn(["git", "checkout", "--", "pollci.json"], [command for command, _, _ in process.calls])
        self.assertEqual(build.environment_string, "RAILS_ENV=test")

    def test_invalid_repository_config_fails_the_build(self):
        project = self.make_project()
        with open(os.path.join(project.code_path, "pollci.json"), "w") as f:
            f.write("[1, 2")
        process = FakeProcess()

        build = self.run_build(project, process)

        self.assertEqual(build.status, BuildStatus.FAILED)
        self.assertIn("pollci.json", build.log)
        self.assertEqual(process.shell_commands(), [])

    def test_sequential_forced_builds_get_distinct_numbers(self):
        project = self.make_project()
        service = ProjectService(self.db, FakeProcess(), LockRegistry())
        numbers = []
        for _ in range(3):
            service.force_build(project)
            numbers.append(service.run_build(project).number)
        self.assertEqual(numbers, [1, 2, 3])

    def test_request_made_during_build_stays_queued(self):
        project = self.make_project()
        project.force_build()
        self.db.commit()

        process = ForcingProcess(TestingSessionLocal, project.id)
        build = self.run_build(project, process)

        self.assertEqual(build.number, 1)
        self.assertTrue(process.forced)
        self.db.expire_all()
        self.assertTrue(self.db.query(Project).first().build_requested)

        queued = self.run_build(project, FakeProcess())
        self.assertEqual(queued.number, 2)
        self.db.expire_all()
        self.assertFalse(self.db.query(Project).first().build_requested)

    def test_project_without_working_copy_is_not_built(self):
        project = self.make_project(checked_out=False)
        process = FakeProcess()

        self.assertIsNone(self.run_build(project, process))
        self.assertEqual(process.calls, [])
        self.assertEqual(self.db.query(Build).count(), 0)


class TestConcurrentBuilds(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.projects_dir_patch = patch("pollci.models.PROJECTS_DIR", self.temp_dir)
        self.projects_dir_patch.start()
        # File-backed so every thread gets its own connection
        self.engine = create_engine(
            f"sqlite:///{os.path.join(self.temp_dir, 'pollci.db')}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def tearDown(self):
        self.projects_dir_patch.stop()
        self.engine.dispose()
        shutil.rmtree(self.temp_dir)

    def test_parallel_run_build_calls_get_distinct_numbers(self):
        db = self.Session()
        project = Project(name="goldberg", url="git://some.url.git", branch="master", checked_out=True)
        project.config = ProjectConfig()
        db.add(project)
        db.commit()
        project_id = project.id
        os.makedirs(project.code_path)
        db.close()

        building = threading.Event()
        process = SlowBuildProcess(building, revisions=["aaa", "bbb", "bbb", "ccc"])
        locks = LockRegistry()
        numbers = []

        def build():
            session = self.Session()
            try:
                result = ProjectService(session, process, locks).run_build(session.get(Project, project_id))
                numbers.append(result.number if result else None)
            finally:
                session.close()

        first = threading.Thread(target=build)
        first.start()
        self.assertTrue(building.wait(5))
        second = threading.Thread(target=build)
        second.start()
        first.join(10)
        second.join(10)

        self.assertEqual(sorted(numbers), [1, 2])
        db = self.Session()
        try:
            builds = db.query(Build).order_by(Build.number).all()
            self.assertEqual([b.number for b in builds], [1, 2])
            self.assertEqual(builds[1].previous_build_revision, "bbb")
        finally:
            db.close()


class TestLockRegistry(unittest.TestCase):
    def test_builds_of_one_project_are_serialized(self):
        locks = LockRegistry()
        started = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold(1):
                order.append("first-start")
                started.set()
                release.wait(5)
                order.append("first-end")

        def second():
            with locks.hold(1):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        started.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.2)
        self.assertTrue(t2.is_alive())
        self.assertTrue(locks.is_locked(1))
        release.set()
        t1.join(5)
        t2.join(5)

        self.assertEqual(order, ["first-start", "first-end", "second"])

    def test_other_projects_are_not_blocked(self):
        locks = LockRegistry()
        with locks.hold(1):
            self.assertFalse(locks.is_locked(2))
            with locks.hold(2):
                self.assertTrue(locks.is_locked(2))


class TestProcessService(unittest.TestCase):
    @patch("pollci.services.process_service.subprocess.run")
    def test_string_commands_use_the_shell(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="ok")
        res = ProcessService().run("rake", cwd="/tmp/code", env={"A": "1"})

        self.assertEqual(res, CommandResult(0, "ok"))
        kwargs = mock_run.call_args[1]
        self.assertTrue(kwargs["shell"])
        self.assertEqual(kwargs["cwd"], "/tmp/code")
        self.assertEqual(kwargs["env"]["A"], "1")
        self.assertIn("PATH", kwargs["env"])

    @patch("pollci.services.process_service.subprocess.run")
    def test_argument_vectors_skip_the_shell(self, mock_run):
        mock_run.return_value = MagicMock(returncode=128, stdout="fatal")
        res = ProcessService().run(["git", "fetch"])

        self.assertFalse(res.success)
        self.assertFalse(mock_run.call_args[1]["shell"])
        self.assertIsNone(mock_run.call_args[1]["env"])

    @patch("pollci.services.process_service.subprocess.run")
    def test_timeout_is_a_failure(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("rake", 5, output="partial")
        res = ProcessService(timeout=5).run("rake")

        self.assertEqual(res.exit_code, -1)
        self.assertIn("partial", res.output)
        self.assertIn("Timed out", res.output)
        self.assertEqual(mock_run.call_args[1]["timeout"], 5)

    @patch("pollci.services.process_service.subprocess.run")
    def test_run_all_stops_at_first_failure(self, mock_run):
        mock_run.side_effect = [MagicMock(returncode=0, stdout="a"), MagicMock(returncode=1, stdout="b")]
        res = ProcessService().run_all([["git", "fetch"], ["git", "reset"], ["git", "submodule"]])

        self.assertEqual(res, CommandResult(1, "ab"))
        self.assertEqual(mock_run.call_count, 2)


class TestOrchestrator(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.locks = LockRegistry()

    def make_orchestrator(self, process=None):
        orchestrator = Orchestrator(
            session_factory=TestingSessionLocal, process=process or FakeProcess(), locks=self.locks, workers=1
        )
        self.addCleanup(orchestrator.shutdown)
        return orchestrator

    def test_poll_builds_due_projects(self):
        self.make_project(name="one")
        self.make_project(name="two")

        futures = self.make_orchestrator().poll(block=True)

        self.assertEqual(len(futures), 2)
        self.db.expire_all()
        self.assertEqual(self.db.query(Build).count(), 2)
        for project in self.db.query(Project).all():
            self.assertEqual(project.latest_build_number, 1)
            self.assertGreater(project.next_build_at, utcnow() + timedelta(seconds=10))

    def test_poll_skips_projects_not_due(self):
        self.make_project(next_build_at=utcnow() + timedelta(minutes=5))
        self.assertEqual(self.make_orchestrator().poll(block=True), [])

    def test_poll_uses_project_frequency(self):
        self.make_project(config=ProjectConfig(frequency=3600))
        before = utcnow()
        self.make_orchestrator().poll(block=True)
        self.db.expire_all()
        self.assertGreaterEqual(self.db.query(Project).first().next_build_at, before + timedelta(seconds=3600))

    @patch("pollci.orchestrator.ProjectService")
    def test_failure_in_one_project_does_not_stop_others(self, mock_service):
        self.make_project(name="broken")
        self.make_project(name="healthy")
        mock_service.return_value.run_build.side_effect = [RuntimeError("boom"), None]

        futures = self.make_orchestrator().poll(block=True)

        self.assertEqual(mock_service.return_value.run_build.call_count, 2)
        self.assertEqual([f.result() for f in futures], [None, None])

    @patch("pollci.orchestrator.ProjectService")
    def test_running_project_is_skipped(self, mock_service):
        project = self.make_project()
        lock = self.locks.lock_for(project.id)
        lock.acquire()
        try:
            futures = self.make_orchestrator().poll(block=True)
        finally:
            lock.release()

        self.assertEqual(futures, [])
        mock_service.return_value.run_build.assert_not_called()
        self.db.expire_all()
        self.assertIsNone(self.db.query(Project).first().next_build_at)

    def test_force_build_makes_project_due(self):
        project = self.make_project(next_build_at=utcnow() + timedelta(minutes=5))
        self.add_build(project, 1, "abc123")
        orchestrator = self.make_orchestrator()

        self.assertTrue(orchestrator.force_build(project.id))
        orchestrator.poll(block=True)

        self.db.expire_all()
        project = self.db.query(Project).first()
        self.assertEqual(project.latest_build_number, 2)
        self.assertFalse(project.build_requested)

    def test_force_build_unknown_project(self):
        self.assertFalse(self.make_orchestrator().force_build(999))


class TestRoutes(DatabaseTestCase):
    @patch("pollci.services.project_service.shutil.rmtree")
    def test_delete_project_route(self, mock_rmtree):
        from pollci.main import delete_project

        project = self.make_project()
        project_id = project.id
        delete_project(project_id=project_id, db=self.db)

        self.assertIsNone(self.db.query(Project).filter(Project.id == project_id).first())
        mock_rmtree.assert_called_once()

    def test_force_build_route(self):
        from pollci.main import force_build

        project = self.make_project(next_build_at=utcnow())
        orchestrator = Orchestrator(session_factory=TestingSessionLocal, process=FakeProcess(), workers=1)
        self.addCleanup(orchestrator.shutdown)
        with patch("pollci.main.orchestrator", orchestrator):
            force_build(project_id=project.id)

        self.db.expire_all()
        project = self.db.query(Project).first()
        self.assertTrue(project.build_requested)
        self.assertIsNone(project.next_build_at)

    @patch("pollci.main.orchestrator")
    def test_unknown_project_is_404(self, mock_orchestrator):
        from fastapi import HTTPException
        from pollci.main import force_build

        mock_orchestrator.force_build.return_value = False
        with self.assertRaises(HTTPException) as ctx:
            force_build(project_id=999)
        self.assertEqual(ctx.exception.status_code, 404)
        mock_orchestrator.force_build.assert_called_once_with(999)

    def test_list_builds_route(self):
        from pollci.main import list_builds

        project = self.make_project()
        self.add_build(project, 1, "aaa")
        self.add_build(project, 2, "bbb")

        builds = list_builds(project_id=project.id, db=self.db)
        self.assertEqual([b["number"] for b in builds], [2, 1])


class TestCli(DatabaseTestCase):
    def test_parser(self):
        from pollci.cli import build_parser

        args = build_parser().parse_args(["add", "goldberg", "git://some.url.git", "--command", "make test"])
        self.assertEqual(args.subcommand, "add")
        self.assertEqual(args.command, "make test")
        self.assertEqual(args.frequency, 20)

    @patch("pollci.cli.ProjectService")
    @patch("pollci.cli.SessionLocal", TestingSessionLocal)
    def test_build_command_forces_and_runs(self, mock_service):
        from pollci.cli import main

        self.make_project()
        mock_service.return_value.run_build.return_value = MagicMock(number=1, status=BuildStatus.FAILED)

        self.assertEqual(main(["build", "goldberg"]), 1)
        mock_service.return_value.force_build.assert_called_once()

    @patch("pollci.cli.SessionLocal", TestingSessionLocal)
    def test_build_unknown_project(self):
        from pollci.cli import main

        self.assertEqual(main(["build", "missing"]), 1)


if __name__ == "__main__":
    unittest.main()
