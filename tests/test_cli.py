"""Tests for the heartbeat command-line interface."""

import json

import pytest

from heartbeat.cli import detect_start_phase, main
from heartbeat.db import Blackboard


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "cli.db"


@pytest.fixture
def cli_board(db_path):
    return Blackboard(db_path)


def run(db_path, *argv):
    main(["--db", str(db_path), *argv])


def write_artifacts(project_dir, feature_dir_name, *names):
    feature_dir = project_dir / ".specify" / "specs" / feature_dir_name
    feature_dir.mkdir(parents=True, exist_ok=True)
    for name in names:
        (feature_dir / name).write_text(f"# {name}\n")


class TestDetectStartPhase:

    def test_no_feature_dir(self, project_dir):
        assert detect_start_phase(project_dir, "F-001") == ("specify", [])

    def test_first_missing_artifact(self, project_dir):
        write_artifacts(project_dir, "f-001-login", "spec.md")

        assert detect_start_phase(project_dir, "F-001") == ("plan", ["spec.md"])

    def test_all_artifacts_present(self, project_dir):
        write_artifacts(project_dir, "f-001-login", "spec.md", "plan.md", "tasks.md")

        phase, found = detect_start_phase(project_dir, "F-001")

        assert phase == "implement"
        assert found == ["spec.md", "plan.md", "tasks.md"]


class TestSpecflowQueue:

    def test_queues_first_phase(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir, metadata={"specflow_enabled": True})

        run(db_path, "specflow-queue", "--project", "proj-a", "--feature", "F-001", "--priority", "P1")

        item = cli_board.get_work_item("specflow-F-001-specify")
        assert item["priority"] == "P1"
        assert item["source"] == "specflow"
        assert item["metadata"] == {
            "specflow_feature_id": "F-001",
            "specflow_phase": "specify",
            "specflow_project_id": "proj-a",
            "retry_count": 0,
        }
        assert "(batch mode)" in item["description"]
        assert "Queued: F-001 → specify phase" in capsys.readouterr().out

    def test_resumes_from_existing_artifacts(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir, metadata={"specflow_enabled": True})
        write_artifacts(project_dir, "f-002-export", "spec.md", "plan.md")

        run(db_path, "--json", "specflow-queue", "--project", "proj-a", "--feature", "F-002")

        out = json.loads(capsys.readouterr().out)
        assert out["phase"] == "tasks"
        assert out["itemId"] == "specflow-F-002-tasks"
        assert out["existingArtifacts"] == ["spec.md", "plan.md"]

    def test_project_must_enable_pipeline(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir)

        with pytest.raises(SystemExit) as exc:
            run(db_path, "specflow-queue", "--project", "proj-a", "--feature", "F-001")

        assert exc.value.code == 1
        assert "specflow_enabled" in capsys.readouterr().err
        assert cli_board.list_work_items(all_statuses=True) == []

    def test_unknown_project(self, db_path, capsys):
        with pytest.raises(SystemExit):
            run(db_path, "specflow-queue", "--project", "nope", "--feature", "F-001")

        assert 'project "nope" not found' in capsys.readouterr().err

    def test_active_feature_rejected(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir, metadata={"specflow_enabled": True})
        run(db_path, "specflow-queue", "--project", "proj-a", "--feature", "F-001")

        with pytest.raises(SystemExit):
            run(db_path, "specflow-queue", "--project", "proj-a", "--feature", "f-001")

        assert "already exists" in capsys.readouterr().err

    def test_finished_feature_can_requeue(self, db_path, cli_board, project_dir):
        cli_board.register_project("proj-a", local_path=project_dir, metadata={"specflow_enabled": True})
        cli_board.create_work_item(
            "specflow-F-001-complete", "SpecFlow complete: F-001", project="proj-a",
            metadata={"specflow_feature_id": "F-001", "specflow_phase": "complete", "specflow_project_id": "proj-a"},
        )
        cli_board.fail_work_item("specflow-F-001-complete")

        run(db_path, "specflow-queue", "--project", "proj-a", "--feature", "F-001")

        assert cli_board.get_work_item("specflow-F-001-specify")["status"] == "available"


class TestDispatchCommand:

    def test_dry_run_lists_without_claiming(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir)
        cli_board.create_work_item("task-1", "Fix login", project="proj-a", priority="P1")
        cli_board.create_work_item("task-2", "Orphan")

        run(db_path, "dispatch", "--dry-run", "--max-items", "5")

        out = capsys.readouterr().out
        assert "task-1: WOULD DISPATCH to proj-a" in out
        assert "task-2: SKIP (no project assigned)" in out
        assert "1 would dispatch, 1 skipped" in out
        assert cli_board.get_work_item("task-1")["status"] == "available"
        assert cli_board.list_events() == []

    def test_empty_queue_json(self, db_path, capsys):
        run(db_path, "--json", "dispatch", "--dry-run")

        out = json.loads(capsys.readouterr().out)
        assert out["dispatched"] == []
        assert out["dry_run"] is True

    def test_concurrency_limit(self, db_path, cli_board, project_dir, capsys):
        cli_board.register_project("proj-a", local_path=project_dir)
        cli_board.create_work_item("task-1", "Fix login", project="proj-a")
        cli_board.register_agent("dispatch-other")

        run(db_path, "dispatch", "--dry-run")

        assert "*: SKIP (concurrency limit reached)" in capsys.readouterr().out


class TestInspectionCommands:

    def test_project_add_and_list(self, db_path, project_dir, capsys):
        run(db_path, "project", "add", "proj-a", "--path", str(project_dir), "--metadata", '{"specflow_enabled": true}')
        run(db_path, "--json", "project", "list")

        out = capsys.readouterr().out
        projects = json.loads(out[out.index("["):])
        assert projects[0]["metadata"] == {"specflow_enabled": True}

    def test_bad_metadata_rejected(self, db_path, capsys):
        with pytest.raises(SystemExit):
            run(db_path, "project", "add", "proj-a", "--metadata", "[1, 2]")

        assert "JSON object" in capsys.readouterr().err

    def test_work_add_duplicate(self, db_path, capsys):
        run(db_path, "work", "add", "task-1", "Fix login")

        with pytest.raises(SystemExit):
            run(db_path, "work", "add", "task-1", "Again")

        assert "already exists" in capsys.readouterr().err

    def test_work_list_table(self, db_path, capsys):
        run(db_path, "work", "add", "task-1", "Fix login", "--priority", "P0")
        capsys.readouterr()

        run(db_path, "work", "list")

        out = capsys.readouterr().out
        assert "task-1" in out
        assert "P0" in out
        assert "1 item(s)" in out

    def test_work_fail(self, db_path, cli_board, capsys):
        cli_board.create_work_item("task-1", "Stuck task")

        run(db_path, "work", "fail", "task-1")

        assert "Marked task-1 failed" in capsys.readouterr().out
        assert cli_board.get_work_item("task-1")["status"] == "failed"
        assert cli_board.list_work_items() == []
        assert cli_board.list_events(target_id="task-1")[0]["summary"] == "Marked task-1 failed from the command line"

    def test_work_fail_unknown(self, db_path, capsys):
        with pytest.raises(SystemExit):
            run(db_path, "work", "fail", "nope")

        assert "Work item not found: nope" in capsys.readouterr().err

    def test_lineage(self, db_path, cli_board, capsys):
        meta = {"specflow_feature_id": "F-001", "specflow_project_id": "proj-a"}
        cli_board.create_work_item("specflow-F-001-specify", "S", metadata={**meta, "specflow_phase": "specify"})
        cli_board.create_work_item("specflow-F-001-plan", "P", metadata={**meta, "specflow_phase": "plan"})
        cli_board.create_work_item("unrelated", "U")

        run(db_path, "--json", "work", "lineage", "F-001")

        items = json.loads(capsys.readouterr().out)
        assert [i["item_id"] for i in items] == ["specflow-F-001-specify", "specflow-F-001-plan"]

    def test_events(self, db_path, cli_board, capsys):
        cli_board.append_event("Dispatching task", target_id="task-1")

        run(db_path, "events", "--target", "task-1")

        assert "[task-1] Dispatching task" in capsys.readouterr().out

    def test_check_without_config(self, db_path, capsys):
        run(db_path, "check")

        assert "No enabled checks." in capsys.readouterr().out
