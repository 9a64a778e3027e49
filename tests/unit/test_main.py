import pytest
import yaml
from unittest.mock import MagicMock
from typer.testing import CliRunner
from rich.console import Console

from downtranscoder import main as dt_main
from downtranscoder.domain.models import DispatchSummary
from downtranscoder.infrastructure.catalog import MediaCatalog
from downtranscoder.infrastructure.database import Database
from downtranscoder.infrastructure.status_store import StatusStore


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setattr(dt_main, "console", Console(width=200))
    store = tmp_path / "store"
    (store / "alice").mkdir(parents=True)
    (store / "alice" / "big.mkv").write_bytes(b"v" * 4096)
    config_path = tmp_path / "downtranscoder.yaml"
    config_path.write_text(yaml.safe_dump({
        "general": {
            "catalog_path": str(tmp_path / "catalog.db"),
            "log_path": str(tmp_path / "logs" / "downtranscoder.log"),
            "temp_dir": str(tmp_path),
        },
        "scan": {"trigger_size_gb": 0},
    }))
    return ["--config", str(config_path), "--store-root", str(store)]


def test_missing_config_exits(tmp_path):
    runner = CliRunner()
    result = runner.invoke(dt_main.app, ["status", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_scan_queue_and_list(cli_env):
    runner = CliRunner()

    result = runner.invoke(dt_main.app, ["scan", *cli_env])
    assert result.exit_code == 0, result.output
    assert "Found 1 file(s)" in result.output

    result = runner.invoke(dt_main.app, ["queue", "--all", *cli_env])
    assert result.exit_code == 0, result.output
    assert "Queued 1 item(s)" in result.output

    result = runner.invoke(dt_main.app, ["items", "--state", "queued", *cli_env])
    assert result.exit_code == 0, result.output
    assert "big.mkv" in result.output


def test_queue_requires_ids_or_all(cli_env):
    result = CliRunner().invoke(dt_main.app, ["queue", *cli_env])
    assert result.exit_code == 1
    assert "Give item ids or --all" in result.output


def test_queue_unknown_item_reports_error(cli_env):
    runner = CliRunner()
    runner.invoke(dt_main.app, ["scan", *cli_env])
    runner.invoke(dt_main.app, ["queue", "1", *cli_env])

    result = runner.invoke(dt_main.app, ["queue", "1", "99", *cli_env])

    assert result.exit_code == 1
    assert "Media item 99 does not exist" in result.output


def test_status_shows_scan_and_queue(cli_env):
    result = CliRunner().invoke(dt_main.app, ["status", *cli_env])
    assert result.exit_code == 0, result.output
    assert "scan.is_scanning" in result.output
    assert "queue.queued_items" in result.output


def test_transcode_uses_dispatcher(cli_env, monkeypatch):
    calls = []
    real_build = dt_main.build_services

    def fake_build(config_path, store_root):
        services = real_build(config_path, store_root)
        dispatcher = MagicMock()
        dispatcher.dispatch.side_effect = lambda: calls.append("dispatch") or DispatchSummary(processed=1, transcoded=[1])
        services.dispatcher = dispatcher
        return services

    monkeypatch.setattr(dt_main, "build_services", fake_build)
    result = CliRunner().invoke(dt_main.app, ["transcode", *cli_env])

    assert result.exit_code == 0, result.output
    assert calls == ["dispatch"]
    assert "1 transcoded, 0 aborted" in result.output


def test_delete_original_refused_for_untranscoded(cli_env):
    runner = CliRunner()
    runner.invoke(dt_main.app, ["scan", *cli_env])

    result = runner.invoke(dt_main.app, ["delete-original", "1", *cli_env])

    assert result.exit_code == 1
    assert "was not deleted" in result.output


def test_reset_force(cli_env):
    runner = CliRunner()
    runner.invoke(dt_main.app, ["scan", *cli_env])

    result = runner.invoke(dt_main.app, ["reset", "--force", *cli_env])

    assert result.exit_code == 0, result.output
    assert "Removed 1 item(s)" in result.output


def test_reset_refused_while_dispatch_running(cli_env, tmp_path):
    runner = CliRunner()
    runner.invoke(dt_main.app, ["scan", *cli_env])
    db = Database(tmp_path / "catalog.db")
    StatusStore(db).try_begin_transcoding()

    result = runner.invoke(dt_main.app, ["reset", *cli_env], input="y\n")
    assert result.exit_code == 1
    assert "A dispatch is running" in result.output
    assert len(MediaCatalog(db).find_all()) == 1

    result = runner.invoke(dt_main.app, ["reset", "--force", *cli_env])
    assert result.exit_code == 0, result.output
    assert StatusStore(db).get_queue_status().is_transcoding is False
    db.close()
