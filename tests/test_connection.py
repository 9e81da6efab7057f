import json
import pytest
from wirekernel.channels import Channel
from wirekernel.connection import ConnectionInfo
from wirekernel.errors import ConfigError


def _descriptor(**kw):
    return dict(transport="tcp", ip="127.0.0.1", shell_port=5001, iopub_port="5002", stdin_port=5003, control_port=5004,
        hb_port=5005, key="secret", signature_scheme="hmac-sha256", kernel_name="wirekernel") | kw


def test_from_file(tmp_path):
    path = tmp_path / "kernel.json"
    path.write_text(json.dumps(_descriptor()))
    conn = ConnectionInfo.from_file(str(path))
    assert conn.iopub_port == 5002
    assert conn.key_bytes == b"secret"
    assert conn.digestmod == "sha256"
    assert conn.addr(conn.shell_port) == "tcp://127.0.0.1:5001"
    assert conn.port(Channel.HB) == 5005


def test_defaults_and_ipc():
    data = _descriptor(transport="ipc", ip="/tmp/wk")
    for name in ("key", "signature_scheme", "kernel_name"): data.pop(name)
    conn = ConnectionInfo.from_dict(data)
    assert conn.key == "" and conn.signature_scheme == "hmac-sha256" and conn.kernel_name == ""
    assert conn.addr(5001) == "ipc:///tmp/wk-5001"


def test_missing_field_and_bad_scheme():
    with pytest.raises(ConfigError, match="hb_port"): ConnectionInfo.from_dict({k: v for k, v in _descriptor().items() if k != "hb_port"})
    with pytest.raises(ConfigError, match="signature scheme"): ConnectionInfo.from_dict(_descriptor(signature_scheme="rsa-sha1"))
    with pytest.raises(ConfigError, match="signature scheme"): ConnectionInfo.from_dict(_descriptor(signature_scheme="hmac-nope"))


def test_key_not_in_repr():
    assert "secret" not in repr(ConnectionInfo.from_dict(_descriptor()))
