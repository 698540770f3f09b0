"""Tests for configuration loading."""

import textwrap

import pytest

from padm_exporter.config import ConfigError, load_config, split_listen_addr

MINIMAL = """
host: padm.local
username: monitor
password: secret
variables:
  - temp1
  - temp2
"""


def write_config(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


def test_load_minimal_config_applies_defaults(tmp_path):
    config = load_config(write_config(tmp_path, MINIMAL))

    assert config.base_url == "https://padm.local"
    assert [v.name for v in config.variables] == ["temp1", "temp2"]
    assert config.interval == 30
    assert config.listen_host == "0.0.0.0"
    assert config.listen_port == 8080
    assert config.token_ttl == 300
    assert config.token_margin == 30
    assert config.retry_cap == 3
    assert config.staleness_threshold == 90
    assert config.log_level == "info"


def test_load_full_config(tmp_path):
    config = load_config(write_config(tmp_path, """
        host: 10.0.0.5
        port: 8443
        scheme: http
        tls_insecure: true
        username: monitor
        password: secret
        interval: 10
        listen_addr: "[::]:9120"
        log_level: DEBUG
        stale_after: 45
        variables:
          - name: Temperature (C)
            metric: padm_temperature_celsius
            unit: celsius
          - name: Operating Mode
            device: Rack A
            states:
              "Off": 0
              Cooling: 2
    """))

    assert config.base_url == "http://10.0.0.5:8443"
    assert config.tls_insecure is True
    assert config.listen_host == "::"
    assert config.listen_port == 9120
    assert config.log_level == "debug"
    assert config.staleness_threshold == 45
    assert config.variables[0].metric == "padm_temperature_celsius"
    assert config.variables[1].states == {"Off": 0.0, "Cooling": 2.0}
    assert config.variables[1].key == "Rack A/Operating Mode"


def test_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("PADM_TEST_PASSWORD", "from-env")
    config = load_config(write_config(tmp_path, MINIMAL.replace("secret", "${PADM_TEST_PASSWORD}")))

    assert config.password == "from-env"


def test_unset_env_var_is_rejected(tmp_path, monkeypatch):
    monkeypatch.delenv("PADM_TEST_MISSING", raising=False)

    with pytest.raises(ConfigError, match="password"):
        load_config(write_config(tmp_path, MINIMAL.replace("secret", "${PADM_TEST_MISSING}")))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "nope.yaml"))


def test_malformed_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path, "host: [unclosed"))


def test_top_level_must_be_mapping(tmp_path):
    with pytest.raises(ConfigError, match="mapping"):
        load_config(write_config(tmp_path, "- just\n- a list\n"))


@pytest.mark.parametrize("change", [
    ("variables:\n  - temp1\n  - temp2\n", "variables: []\n"),
    ("host: padm.local", "host: https://padm.local"),
    ("host: padm.local", "host: padm.local\nlisten_addr: nowhere"),
    ("host: padm.local", "host: padm.local\ntoken_ttl: 20\ntoken_margin: 30"),
    ("host: padm.local", "host: padm.local\ninterval: 0"),
    ("host: padm.local", "host: padm.local\nlog_level: loud"),
    ("  - temp2\n", "  - temp1\n"),
])
def test_invalid_values(tmp_path, change):
    old, new = change
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path, MINIMAL.replace(old, new)))


def test_split_listen_addr():
    assert split_listen_addr("127.0.0.1:9000") == ("127.0.0.1", 9000)
    assert split_listen_addr(":9000") == ("0.0.0.0", 9000)
    with pytest.raises(ValueError):
        split_listen_addr("127.0.0.1:99999")


@pytest.mark.parametrize("variables", [
    # Derived name equals an operational gauge
    "  - Poll Success\n",
    "  - name: uptime\n    metric: padm_variable_last_success_timestamp_seconds\n",
    "  - name: Device Up\n",
    # Counters render without _total, so this still collides
    "  - name: polls\n    metric: padm_poll_success_total\n    type: counter\n",
])
def test_reserved_metric_names_rejected(tmp_path, variables):
    content = MINIMAL.replace("  - temp2\n", variables)

    with pytest.raises(ConfigError, match="reserved"):
        load_config(write_config(tmp_path, content))


@pytest.mark.parametrize("second", [
    "    type: counter\n",
    "    value_label: mode\n",
    "    info: true\n",
])
def test_shared_metric_must_agree(tmp_path, second):
    content = MINIMAL.replace("  - temp1\n  - temp2\n", (
        "  - name: Temperature (C)\n    metric: padm_temperature\n    device: Rack A\n"
        "  - name: Temperature (C)\n    metric: padm_temperature\n    device: Rack B\n" + second
    ))

    with pytest.raises(ConfigError, match="share metric padm_temperature"):
        load_config(write_config(tmp_path, content))


def test_shared_metric_across_devices_is_allowed(tmp_path):
    content = MINIMAL.replace("  - temp1\n  - temp2\n", (
        "  - name: Temperature (C)\n    metric: padm_temperature\n    device: Rack A\n"
        "  - name: Temperature (C)\n    metric: padm_temperature\n    device: Rack B\n"
    ))

    config = load_config(write_config(tmp_path, content))

    assert [v.key for v in config.variables] == ["Rack A/Temperature (C)", "Rack B/Temperature (C)"]


@pytest.mark.parametrize("host, expected", [
    ("fe80::1", "https://[fe80::1]:8443"),
    ("[fe80::1]", "https://[fe80::1]:8443"),
    ("10.0.0.5", "https://10.0.0.5:8443"),
])
def test_base_url_brackets_ipv6_hosts(tmp_path, host, expected):
    content = MINIMAL.replace("host: padm.local", f"host: \"{host}\"\nport: 8443")

    assert load_config(write_config(tmp_path, content)).base_url == expected
