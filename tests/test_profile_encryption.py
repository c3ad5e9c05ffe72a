import base64
from dataclasses import replace

import pytest

from services.errors import EncryptionKeyError, ProfileDecryptionError
from services.profile_encryption import (
    ALGORITHM,
    ProfileEncryptionService,
    generate_key,
    load_keyring,
    rotate,
    validate_key,
)

PROFILE = "Age: 35.\nOccupation: engineer.\nIncome: $150,000."


def test_round_trip(encryption_service):
    payload = encryption_service.encrypt(PROFILE)
    assert payload.algorithm == ALGORITHM
    assert payload.key_version == 1
    assert PROFILE not in payload.encrypted_data
    assert encryption_service.decrypt(payload) == PROFILE


def test_every_write_uses_a_fresh_iv(encryption_service):
    first = encryption_service.encrypt(PROFILE)
    second = encryption_service.encrypt(PROFILE)
    assert first.iv != second.iv
    assert first.encrypted_data != second.encrypted_data
    assert first.tag != second.tag


def test_wrong_key_fails_closed(encryption_service):
    payload = encryption_service.encrypt(PROFILE)
    other = ProfileEncryptionService(generate_key(), key_version=1)
    with pytest.raises(ProfileDecryptionError) as excinfo:
        other.decrypt(payload)
    assert str(excinfo.value) == "Failed to decrypt profile data"


def test_tampering_is_detected(encryption_service):
    payload = encryption_service.encrypt(PROFILE)
    other = encryption_service.encrypt("something else entirely")
    with pytest.raises(ProfileDecryptionError):
        encryption_service.decrypt(replace(payload, tag=other.tag))
    with pytest.raises(ProfileDecryptionError):
        encryption_service.decrypt(replace(payload, iv="not base64!"))


def test_key_version_mismatch_fails(encryption_key, encryption_service):
    payload = encryption_service.encrypt(PROFILE)
    newer = ProfileEncryptionService(encryption_key, key_version=2)
    with pytest.raises(ProfileDecryptionError):
        newer.decrypt(payload)


@pytest.mark.parametrize("bad_key", [
    "not-base64!!",
    base64.b64encode(b"x" * 16).decode(),
    base64.b64encode(b"\x00" * 32).decode(),
    12345,
])
def test_unacceptable_keys_are_rejected(bad_key):
    assert not validate_key(bad_key)
    with pytest.raises(EncryptionKeyError):
        ProfileEncryptionService(bad_key)


def test_missing_key_is_rejected(monkeypatch):
    monkeypatch.delenv("PROFILE_ENCRYPTION_KEY", raising=False)
    with pytest.raises(EncryptionKeyError):
        ProfileEncryptionService()


def test_key_from_environment(monkeypatch, encryption_key):
    monkeypatch.setenv("PROFILE_ENCRYPTION_KEY", encryption_key)
    monkeypatch.setenv("PROFILE_ENCRYPTION_KEY_VERSION", "3")
    service = ProfileEncryptionService()
    assert service.key_version == 3
    assert service.decrypt(service.encrypt(PROFILE)) == PROFILE


def test_rotate_is_pure(encryption_key, encryption_service):
    record = encryption_service.encrypt(PROFILE)
    snapshot = replace(record)
    new_key = generate_key()

    rotated = rotate(encryption_key, new_key, record)

    assert record == snapshot
    assert rotated.key_version == 2
    assert ProfileEncryptionService(new_key, key_version=2).decrypt(rotated) == PROFILE
    with pytest.raises(ProfileDecryptionError):
        ProfileEncryptionService(encryption_key, key_version=2).decrypt(rotated)


def test_rotate_with_wrong_old_key_fails(encryption_service):
    record = encryption_service.encrypt(PROFILE)
    with pytest.raises(ProfileDecryptionError):
        rotate(generate_key(), generate_key(), record)


def test_rotate_accepts_services(encryption_service):
    record = encryption_service.encrypt(PROFILE)
    target = ProfileEncryptionService(generate_key(), key_version=7)

    rotated = rotate(encryption_service, target, record)

    assert rotated.key_version == 7
    assert target.decrypt(rotated) == PROFILE


def test_load_keyring(encryption_key):
    other = generate_key()
    services = load_keyring(f"1:{encryption_key}, 3:{other}")
    assert [s.key_version for s in services] == [1, 3]
    assert load_keyring("") == []


@pytest.mark.parametrize("value", ["no-version-here", "x:abc", "2:not-a-key"])
def test_load_keyring_rejects_malformed_entries(value):
    with pytest.raises(EncryptionKeyError) as excinfo:
        load_keyring(value)
    assert "not-a-key" not in str(excinfo.value)
