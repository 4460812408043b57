"""Tests for eval parsing and the quality/code gates."""

import json
from unittest.mock import MagicMock

import pytest

from heartbeat.quality_gate import check_code_gate, check_quality_gate
from heartbeat.specflow_cli import CliResult, parse_eval_feedback, parse_eval_score


class TestParseEvalScore:

    @pytest.mark.parametrize("payload,expected", [
        ({"results": [{"score": 85}]}, 85),
        ({"results": [{"score": 0.72}]}, 72),
        ({"score": 91}, 91),
        ({"percentage": 0.5}, 50),
        ({"results": [], "score": 1}, 100),
    ])
    def test_score_sources(self, payload, expected):
        assert parse_eval_score(json.dumps(payload)) == expected

    def test_unparseable_is_zero(self):
        assert parse_eval_score("Traceback: boom") == 0
        assert parse_eval_score(json.dumps({"results": [{"score": "high"}]})) == 0
        assert parse_eval_score(json.dumps([1, 2])) == 0


class TestParseEvalFeedback:

    def test_result_feedback(self):
        stdout = json.dumps({"results": [{"score": 50, "feedback": "Missing edge cases"}]})
        assert parse_eval_feedback(stdout) == "Missing edge cases"

    def test_structured_details_serialized(self):
        stdout = json.dumps({"score": 50, "details": {"coverage": "low"}})
        assert parse_eval_feedback(stdout) == '{"coverage": "low"}'

    def test_raw_text_fallback(self):
        assert parse_eval_feedback("  not json  ") == "not json"


class TestQualityGate:

    def _runner(self, result):
        return MagicMock(return_value=result)

    def test_passes_at_threshold(self, temp_dir):
        run = self._runner(CliResult(0, stdout=json.dumps({"results": [{"score": 80}]})))

        gate = check_quality_gate(run, temp_dir, "specify", "F-001", threshold=80)

        assert gate.passed is True
        args = run.call_args[0][0]
        assert args[:2] == ["eval", "run"]
        assert args[args.index("--file") + 1].endswith("spec.md")
        assert args[args.index("--rubric") + 1] == "spec-quality"
        assert args[-1] == "--json"

    def test_fails_below_threshold(self, temp_dir):
        run = self._runner(CliResult(0, stdout=json.dumps({"results": [{"score": 0.79, "feedback": "thin"}]})))

        gate = check_quality_gate(run, temp_dir, "plan", "F-001", threshold=80)

        assert gate.passed is False
        assert gate.score == 79
        assert gate.feedback == "thin"

    def test_eval_error_fails(self, temp_dir):
        run = self._runner(CliResult(2, stderr="no such rubric"))

        gate = check_quality_gate(run, temp_dir, "specify", "F-001")

        assert gate.passed is False
        assert gate.score == 0
        assert "no such rubric" in gate.feedback

    def test_ungated_phase_passes_without_eval(self, temp_dir):
        run = self._runner(CliResult(0))

        assert check_quality_gate(run, temp_dir, "tasks", "F-001").passed is True
        run.assert_not_called()


class TestCodeGate:

    def test_source_changes_pass(self):
        files = MagicMock(return_value=["src/app.py", ".specify/specs/f-001/spec.md"])

        result = check_code_gate(files, "/wt", "main")

        assert result.passed is True
        assert result.source_files == ["src/app.py"]
        files.assert_called_once_with("/wt", "main")

    def test_docs_only_fails(self):
        files = MagicMock(return_value=["docs/usage.md", "README.md", ".specflow/features.db", "verify.md"])

        result = check_code_gate(files, "/wt", "main")

        assert result.passed is False
        assert "README.md" in result.reason

    def test_empty_diff_fails(self):
        result = check_code_gate(MagicMock(return_value=[]), "/wt", "main")

        assert result.passed is False
        assert "empty diff" in result.reason

    def test_git_error_fails(self):
        result = check_code_gate(MagicMock(side_effect=OSError("no git")), "/wt", "main")

        assert result.passed is False
        assert "no git" in result.reason
