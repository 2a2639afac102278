from datetime import timedelta

import pytest

from locketdb.config import LocketConfig, LoggregatorConfig, load_locket_config, parse_duration

CONFIG_DATA = """{
    "log_level": "debug",
    "listen_address": "1.2.3.4:9090",
    "database_driver": "mysql",
    "max_open_database_connections": 1000,
    "max_database_connection_lifetime": "1h",
    "database_connection_string": "stuff",
    "debug_address": "some-more-stuff",
    "ca_file": "i am a ca file",
    "cert_file": "i am a cert file",
    "key_file": "i am a key file",
    "sql_ca_cert_file": "/var/vcap/jobs/locket/config/sql.ca",
    "sql_enable_identity_verification": true,
    "report_interval":"1s",
    "loggregator": {
        "loggregator_use_v2_api": true,
        "loggregator_api_port": 1234,
        "loggregator_ca_path": "/var/ca_cert",
        "loggregator_cert_path": "/var/cert_path",
        "loggregator_key_path": "/var/key_path",
        "loggregator_source_id": "my-source-id",
        "loggregator_instance_id": "1",
        "loggregator_job_origin": "Earth"
    }
}"""


def write(tmp_path, text):
    path = tmp_path / "config-file"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_parses_config_file(tmp_path):
    config = load_locket_config(write(tmp_path, CONFIG_DATA))
    assert config == LocketConfig(
        database_driver="mysql",
        listen_address="1.2.3.4:9090",
        database_connection_string="stuff",
        max_open_database_connections=1000,
        max_database_connection_lifetime=timedelta(hours=1),
        log_level="debug",
        debug_address="some-more-stuff",
        ca_file="i am a ca file",
        cert_file="i am a cert file",
        key_file="i am a key file",
        sql_ca_cert_file="/var/vcap/jobs/locket/config/sql.ca",
        sql_enable_identity_verification=True,
        loggregator=LoggregatorConfig(
            use_v2_api=True,
            api_port=1234,
            ca_cert_path="/var/ca_cert",
            cert_path="/var/cert_path",
            key_path="/var/key_path",
            job_origin="Earth",
            source_id="my-source-id",
            instance_id="1",
        ),
        report_interval=timedelta(seconds=1),
    )


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_locket_config(str(tmp_path / "foobar"))


def test_invalid_json(tmp_path):
    with pytest.raises(ValueError):
        load_locket_config(write(tmp_path, "{{"))


def test_wrong_value_type(tmp_path):
    with pytest.raises(ValueError):
        load_locket_config(write(tmp_path, '{"max_open_database_connections": "many"}'))


def test_unknown_keys_ignored_and_defaults(tmp_path):
    config = load_locket_config(write(tmp_path, '{"foo": 1, "listen_address": "x:1"}'))
    assert config == LocketConfig(listen_address="x:1")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1h", timedelta(hours=1)),
        ("1s", timedelta(seconds=1)),
        ("1.5s", timedelta(milliseconds=1500)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("-2m", timedelta(minutes=-2)),
        ("0", timedelta(0)),
        ("300ms", timedelta(milliseconds=300)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "5", "1x", "h", "-"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)