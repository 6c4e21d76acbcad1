import pytest

from trench_trader.core.errors import ConfigurationInvalid, KeyVaultError
from trench_trader.core.key_vault import KeyVault


def vault(secret="server-secret"):
    return KeyVault(secret, iterations=1_000)


def test_seal_and_unseal():
    v = vault()
    blob = v.seal("my wallet key")
    assert blob.startswith("v1:")
    assert "my wallet key" not in blob
    assert v.unseal(blob) == "my wallet key"


def test_every_seal_is_unique():
    v = vault()
    assert v.seal("same") != v.seal("same")


def test_tampered_blob_is_rejected():
    v = vault()
    blob = v.seal("my wallet key")
    last = "0" if blob[-1] != "0" else "1"
    with pytest.raises(KeyVaultError):
        v.unseal(blob[:-1] + last)


def test_wrong_secret_is_rejected():
    blob = vault("one").seal("my wallet key")
    with pytest.raises(KeyVaultError):
        vault("two").unseal(blob)


@pytest.mark.parametrize("blob", ["", None, "v1:zz:zz:zz", "v2:00:00:00", "not a blob"])
def test_malformed_blob_is_rejected(blob):
    with pytest.raises(KeyVaultError):
        vault().unseal(blob)


def test_empty_server_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationInvalid):
        KeyVault("")
