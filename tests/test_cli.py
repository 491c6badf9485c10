from click.testing import CliRunner

from reviewflow.cli import main


def test_schema_check_passes_on_initialized_database(engine) -> None:
    result = CliRunner().invoke(main, ["schema-check"])
    assert result.exit_code == 0, result.output
    assert "Schema ready" in result.output


def test_conversations_command_with_empty_workspace(engine) -> None:
    result = CliRunner().invoke(
        main, ["conversations", "8c1d2e3f-4a5b-4c6d-8e7f-9a0b1c2d3e4f", "--unresolved"]
    )
    assert result.exit_code == 0, result.output
    assert "No conversations found" in result.output


def test_approvals_command_shows_quorum(seed) -> None:
    result = CliRunner().invoke(main, ["approvals", seed.task])
    assert result.exit_code == 0, result.output
    assert "Approvals: 0/2" in result.output


def test_set_min_approvals_updates_project(seed) -> None:
    result = CliRunner().invoke(main, ["set-min-approvals", seed.project, "3"])
    assert result.exit_code == 0, result.output
    assert "requires 3 approval(s)" in result.output


def test_set_status_refuses_without_quorum(seed) -> None:
    runner = CliRunner()
    assert runner.invoke(main, ["set-status", seed.task, "inreview"]).exit_code == 0

    result = runner.invoke(main, ["set-status", seed.task, "done"])
    assert result.exit_code == 1
    assert "Approval required: 0/2" in result.output
