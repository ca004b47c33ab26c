import sys

sys.path.insert(0, '.')

import pytest

from config import Config, RuntimeConfig, SectionProxy, load_config


YAML = """
monitor:
  window_seconds: ${FLOW_TEST_WINDOW:120}
instruments:
  ADAUSDT:
    min_volume_usd: 1000000
    min_dominance: 65
    min_price_change: 0.6
    cooldown_minutes: 5
filters:
  time_based:
    blocked_days: "5, 6"
    blocked_hours: ""
"""


def test_load_from_path_env_and_reload(tmp_path, monkeypatch):
    path = tmp_path / 'flow.yaml'
    path.write_text(YAML)
    monkeypatch.setenv('FLOW_MONITOR_CONFIG', str(path))
    monkeypatch.delenv('FLOW_TEST_WINDOW', raising=False)

    config = load_config()
    assert config.config_path == path
    assert config.monitor.window_seconds == '120'
    assert isinstance(config['instruments'], SectionProxy)
    assert config.section('missing') == {}
    with pytest.raises(AttributeError):
        config.nothing_here

    runtime = RuntimeConfig.from_config(config)
    assert runtime.get('ADAUSDT').min_volume_usd == 1_000_000.0
    assert runtime.get_filter('time_based')['blocked_days'] == [5, 6]
    assert runtime.get_filter('time_based')['blocked_hours'] == []
    # Unset parameters fall back to defaults
    assert runtime.get_filter('stop_cluster')['max_stops'] == 2

    monkeypatch.setenv('FLOW_TEST_WINDOW', '300')
    config.reload()
    assert config.get('monitor')['window_seconds'] == '300'


def test_missing_or_invalid_files_raise(tmp_path):
    with pytest.raises(RuntimeError, match='not found'):
        Config(tmp_path / 'absent.yaml')

    bad = tmp_path / 'bad.yaml'
    bad.write_text("monitor: [unclosed\n")
    with pytest.raises(RuntimeError, match='Error parsing YAML'):
        Config(bad)

    scalar = tmp_path / 'scalar.yaml'
    scalar.write_text("just a string\n")
    with pytest.raises(RuntimeError, match='must be a mapping'):
        Config(scalar)
