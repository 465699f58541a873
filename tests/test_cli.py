from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from monorepo_publisher.cli import app
from monorepo_publisher.pipeline.checkpointing import Checkpoint, CheckpointPayload, CheckpointStore

runner = CliRunner()


def _write_config(tmp_path: Path) -> Path:
    config = tmp_path / "publisher.toml"
    config.write_text('[workspace]\nroot = "."\n')
    return config


def test_show_checkpoint_without_checkpoint(tmp_path: Path) -> None:
    config = _write_config(tmp_path)

    result = runner.invoke(app, ["show-checkpoint", "--config", str(config)])

    assert result.exit_code == 0
    assert "No checkpoint" in result.output


def test_show_checkpoint_prints_document(tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    CheckpointStore(tmp_path / ".publisher" / "checkpoint.json").save(
        Checkpoint(
            timestamp=1_700_000_000_000,
            last_completed_stage="commit_staged_changes",
            payload=CheckpointPayload(repo_mark="abc", state={"core": {"release_version": "1.0.1"}}),
        )
    )

    result = runner.invoke(app, ["show-checkpoint", "--config", str(config), "--json"])

    assert result.exit_code == 0
    doc = json.loads(result.output)
    assert doc["lastCompletedStage"] == "commit_staged_changes"
    assert doc["payload"]["state"]["core"]["release_version"] == "1.0.1"


def test_show_checkpoint_reports_corrupt_file(tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    path = tmp_path / ".publisher" / "checkpoint.json"
    path.parent.mkdir()
    path.write_text("not json")

    result = runner.invoke(app, ["show-checkpoint", "--config", str(config)])

    assert result.exit_code == 1


def test_resume_and_list_unpublished_are_exclusive(tmp_path: Path) -> None:
    config = _write_config(tmp_path)

    result = runner.invoke(app, ["publish", "--config", str(config), "--resume", "--list-unpublished"])

    assert result.exit_code != 0


def test_canary_and_list_unpublished_are_exclusive(tmp_path: Path) -> None:
    config = _write_config(tmp_path)

    result = runner.invoke(app, ["publish", "--config", str(config), "--canary", "--list-unpublished"])

    assert result.exit_code != 0


def test_show_checkpoint_reads_the_slot_of_the_mode(tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    CheckpointStore(tmp_path / ".publisher" / "canary.json").save(
        Checkpoint(
            timestamp=1_700_000_000_000,
            last_completed_stage="apply_canary_versions",
            payload=CheckpointPayload(repo_mark="abc", state={}),
        )
    )

    canary = runner.invoke(app, ["show-checkpoint", "--config", str(config), "--mode", "canary", "--json"])
    assert canary.exit_code == 0
    assert json.loads(canary.output)["lastCompletedStage"] == "apply_canary_versions"

    publish = runner.invoke(app, ["show-checkpoint", "--config", str(config)])
    assert "No checkpoint" in publish.output

    unknown = runner.invoke(app, ["show-checkpoint", "--config", str(config), "--mode", "nightly"])
    assert unknown.exit_code != 0
