import pytest

from irsa_check.cli import config_from_args, parse_args
from irsa_check.config import RunConfig, build_config, load_settings
from irsa_check.probe import DEFAULT_PROBE_IMAGE


def test_defaults():
    cfg = RunConfig(namespace="camunda")
    assert cfg.exclude == []
    assert cfg.pg_components is None
    assert cfg.disable_live_probe is False
    assert cfg.chart_name == "camunda-platform"
    assert cfg.probe_image == DEFAULT_PROBE_IMAGE
    assert cfg.workers == 1


def test_exclude_string_is_split():
    assert RunConfig(namespace="camunda", exclude="zeebe, operate").exclude == ["zeebe", "operate"]


@pytest.mark.parametrize("kwargs", [{"namespace": ""}, {"namespace": "camunda", "workers": 0},
                                    {"namespace": "camunda", "probe_timeout": 0}])
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        RunConfig(**kwargs)


def test_load_settings(tmp_path):
    path = tmp_path / "irsa.yaml"
    path.write_text("namespace: camunda\ndisable-live-probe: true\npg_components: identity\n")
    assert load_settings(str(path)) == {"namespace": "camunda", "disable_live_probe": True,
                                        "pg_components": "identity"}
    assert load_settings(None) == {}


def test_load_settings_unknown_key(tmp_path):
    path = tmp_path / "irsa.yaml"
    path.write_text("namespace: camunda\ncolour: blue\n")
    with pytest.raises(ValueError, match="colour"):
        load_settings(str(path))


def test_command_line_wins_over_settings():
    cfg = build_config({"namespace": "camunda", "workers": 4, "region": "eu-west-1"},
                       {"namespace": None, "workers": 2, "region": None})
    assert cfg.namespace == "camunda"
    assert cfg.workers == 2
    assert cfg.region == "eu-west-1"


def test_config_from_args(tmp_path):
    path = tmp_path / "irsa.yaml"
    path.write_text("disable-live-probe: true\nprobe-timeout: 30\n")
    args = parse_args(["-n", "camunda", "-e", "operate,optimize", "-p", "identity", "--config", str(path)])
    cfg = config_from_args(args)
    assert cfg.namespace == "camunda"
    assert cfg.exclude == ["operate", "optimize"]
    assert cfg.pg_components == "identity"
    assert cfg.opensearch_components is None
    assert cfg.disable_live_probe is True
    assert cfg.probe_timeout == 30


def test_disable_live_probe_flag():
    cfg = config_from_args(parse_args(["-n", "camunda", "-s"]))
    assert cfg.disable_live_probe is True
