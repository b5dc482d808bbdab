import sys

import pytest

from sandbox_mcp.errors import SecretNotFound
from sandbox_mcp.secrets_store import CommandSecretStore, EnvSecretStore, held_secret, wipe


def test_wipe_zeroes_in_place_and_tolerates_none():
    buffer = bytearray(b"token")
    wipe(buffer)
    assert buffer == bytearray(5)
    wipe(None)


def test_env_store_returns_fresh_copies():
    store = EnvSecretStore(environ={"BRAVE_API_KEY": "bk-1"})
    first = store.lookup("BRAVE_API_KEY")
    wipe(first)
    assert store.lookup("BRAVE_API_KEY") == bytearray(b"bk-1")
    assert store.lookup("MISSING") is None


def test_env_store_prefix_and_empty_values():
    store = EnvSecretStore(environ={"SBX_TOKEN": "abc", "SBX_EMPTY": ""}, prefix="SBX_")
    assert store.lookup("TOKEN") == bytearray(b"abc")
    assert store.lookup("EMPTY") is None


def test_held_secret_wipes_on_normal_exit_and_on_error():
    store = EnvSecretStore(environ={"KEY": "value"})
    with held_secret(store, "KEY") as secret:
        kept = secret
        assert secret == bytearray(b"value")
    assert kept == bytearray(5)

    with pytest.raises(RuntimeError):
        with held_secret(store, "KEY") as secret:
            kept = secret
            raise RuntimeError("boom")
    assert kept == bytearray(5)


def test_held_secret_missing_key():
    with pytest.raises(SecretNotFound) as excinfo:
        with held_secret(EnvSecretStore(environ={}), "NOPE"):
            pass
    assert excinfo.value.key == "NOPE"


def test_command_store_takes_first_line():
    store = CommandSecretStore(f"{sys.executable} -c \"import sys; print('s3cret-' + sys.argv[1]); print('extra')\" {{key}}")
    assert store.lookup("abc") == bytearray(b"s3cret-abc")


def test_command_store_failure_is_none():
    store = CommandSecretStore(f"{sys.executable} -c \"raise SystemExit(3)\" {{key}}")
    assert store.lookup("abc") is None
    assert CommandSecretStore("/nonexistent/secret-helper {key}").lookup("abc") is None
