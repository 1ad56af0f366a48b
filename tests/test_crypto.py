import base64
import json

import pytest

from ledger_audit.crypto import (
    DecryptionError,
    EncryptionKeyError,
    constant_time_compare,
    decrypt,
    encrypt,
    generate_secure_token,
    hash_sha256,
)

KEY = "0123456789abcdef" * 4


def test_encrypted_document_layout() -> None:
    blob = encrypt("secret-token", key=KEY)

    document = json.loads(base64.b64decode(blob))
    assert set(document) == {"ciphertext", "iv", "authTag"}
    assert len(bytes.fromhex(document["iv"])) == 16
    assert len(bytes.fromhex(document["authTag"])) == 16
    assert decrypt(blob, key=KEY) == "secret-token"


def test_same_plaintext_encrypts_differently() -> None:
    assert encrypt("value", key=KEY) != encrypt("value", key=KEY)


def test_tampered_ciphertext_is_rejected() -> None:
    document = json.loads(base64.b64decode(encrypt("value", key=KEY)))
    document["authTag"] = "00" * 16
    tampered = base64.b64encode(json.dumps(document).encode()).decode()

    with pytest.raises(DecryptionError):
        decrypt(tampered, key=KEY)


def test_garbage_is_rejected() -> None:
    with pytest.raises(DecryptionError):
        decrypt("not base64 at all!", key=KEY)


def test_key_is_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_AUDIT_ENCRYPTION_KEY", KEY)

    assert decrypt(encrypt("from-env")) == "from-env"


def test_missing_or_short_key_is_an_error(monkeypatch) -> None:
    monkeypatch.delenv("LEDGER_AUDIT_ENCRYPTION_KEY", raising=False)

    with pytest.raises(EncryptionKeyError):
        encrypt("value")
    with pytest.raises(EncryptionKeyError):
        encrypt("value", key="abcd")
    with pytest.raises(EncryptionKeyError):
        encrypt("value", key="zz" * 32)


def test_token_and_hash_helpers() -> None:
    assert len(generate_secure_token(16)) == 32
    assert generate_secure_token() != generate_secure_token()
    assert hash_sha256("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert constant_time_compare("same", "same")
    assert not constant_time_compare("same", "different")
