import yaml
from typer.testing import CliRunner

from methylflux.cli import app

from test_pipeline import _config, _write_inputs

runner = CliRunner()


def test_init_writes_template(tmp_path):
    target = tmp_path / "config.yaml"
    result = runner.invoke(app, ["init", str(target)])

    assert result.exit_code == 0, result.output
    cfg = yaml.safe_load(target.read_text())
    assert {"dataset", "design", "analysis"} <= set(cfg)
    assert cfg["analysis"]["moderation"] == "limma"


def test_run_from_config(tmp_path):
    matrix_path, annot_path, _ = _write_inputs(tmp_path)
    cfg = _config(tmp_path, matrix_path, annot_path,
                  exports={"path_table": str(tmp_path / "res" / "dmps.csv"), "use_xlsx": False})
    config_path = tmp_path / "run.yaml"
    config_path.write_text(yaml.safe_dump(cfg))

    result = runner.invoke(app, ["run", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "res" / "dmps_Ranked_DMPs.csv").exists()


def test_run_requires_existing_config(tmp_path):
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "missing.yaml")])
    assert result.exit_code != 0


def test_run_rejects_non_mapping(tmp_path):
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("- just\n- a list\n")
    result = runner.invoke(app, ["run", "--config", str(config_path)])
    assert result.exit_code != 0
