"""Tests for registration and password verification."""

import statistics
import time

import pytest
from argon2 import PasswordHasher, Type

from bookingauth.service.credentials import CredentialVerifier, normalize_email
from bookingauth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    ServerError,
)
from bookingauth.storage.errors import ConstraintViolation
from bookingauth.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def verifier(memory_store):
    return CredentialVerifier(memory_store)


class CountingHasher(PasswordHasher):
    """Counts argon2 operations so timing parity can be checked exactly."""

    def __init__(self):
        super().__init__(type=Type.ID)
        self.hash_calls = 0
        self.verify_calls = 0

    def hash(self, *args, **kwargs):
        self.hash_calls += 1
        return super().hash(*args, **kwargs)

    def verify(self, *args, **kwargs):
        self.verify_calls += 1
        return super().verify(*args, **kwargs)


def test_normalize_email_trims_and_lowercases():
    assert normalize_email("  Bob@Example.COM ") == "bob@example.com"


def test_register_stores_normalized_email_and_argon2id_hash(verifier, memory_store):
    user = verifier.register(" Bob@Example.com", "Bobby", "Tables", "Passw0rd!")

    stored = memory_store.get_user_by_email("bob@example.com")
    assert stored is not None
    assert stored.id == user.id
    assert stored.password_algo == "argon2id"
    assert stored.password_hash.startswith("$argon2id$")
    assert stored.password_hash != "Passw0rd!"


def test_same_password_produces_different_hashes(verifier):
    assert verifier.hash_password("Passw0rd!") != verifier.hash_password("Passw0rd!")


def test_register_duplicate_email_conflicts(verifier):
    verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    with pytest.raises(ConflictError) as exc_info:
        verifier.register("  BOB@example.com ", "Other", "Person", "Different1!")
    assert exc_info.value.error_code == "conflict"


def test_duplicate_registration_still_hashes(memory_store):
    hasher = CountingHasher()
    verifier = CredentialVerifier(memory_store, hasher=hasher)
    verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")
    before = hasher.hash_calls

    with pytest.raises(ConflictError):
        verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")
    assert hasher.hash_calls == before + 1


def test_register_race_maps_constraint_violation_to_conflict(memory_store):
    class RacingStore(MemoryStore):
        def create_user(self, *args, **kwargs):
            raise ConstraintViolation("email already exists", {"field": "email"})

    verifier = CredentialVerifier(RacingStore())
    with pytest.raises(ConflictError) as exc_info:
        verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")
    assert exc_info.value.detail == {"field": "email"}


def test_register_store_failure_is_server_error():
    class BrokenStore(MemoryStore):
        def create_user(self, *args, **kwargs):
            raise RuntimeError("disk on fire")

    verifier = CredentialVerifier(BrokenStore())
    with pytest.raises(ServerError):
        verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")


def test_lookup_failure_is_server_error():
    class BrokenStore(MemoryStore):
        def get_user_by_email(self, email):
            raise OSError("connection reset")

    verifier = CredentialVerifier(BrokenStore())
    with pytest.raises(ServerError):
        verifier.verify_credentials("bob@example.com", "Passw0rd!")


def test_verify_credentials_success(verifier):
    user = verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    result = verifier.verify_credentials("BOB@example.com ", "Passw0rd!")

    assert result.id == user.id


def test_wrong_password_and_unknown_email_fail_identically(verifier):
    verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    with pytest.raises(InvalidCredentialsError) as wrong_password:
        verifier.verify_credentials("bob@example.com", "wrong-password")
    with pytest.raises(InvalidCredentialsError) as unknown_email:
        verifier.verify_credentials("nobody@example.com", "Passw0rd!")

    assert type(wrong_password.value) is type(unknown_email.value)
    assert wrong_password.value.message == unknown_email.value.message == "Invalid credentials"
    assert wrong_password.value.error_code == unknown_email.value.error_code
    assert wrong_password.value.detail == unknown_email.value.detail == {}


def test_unknown_email_runs_one_argon2_verify(memory_store):
    hasher = CountingHasher()
    verifier = CredentialVerifier(memory_store, hasher=hasher)
    verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    hasher.verify_calls = 0
    with pytest.raises(InvalidCredentialsError):
        verifier.verify_credentials("nobody@example.com", "Passw0rd!")
    unknown_calls = hasher.verify_calls

    hasher.verify_calls = 0
    with pytest.raises(InvalidCredentialsError):
        verifier.verify_credentials("bob@example.com", "wrong-password")
    wrong_calls = hasher.verify_calls

    assert unknown_calls == wrong_calls == 1


def test_unknown_email_latency_is_comparable(verifier):
    verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    def measure(email):
        samples = []
        for _ in range(5):
            start = time.perf_counter()
            with pytest.raises(InvalidCredentialsError):
                verifier.verify_credentials(email, "wrong-password")
            samples.append(time.perf_counter() - start)
        return statistics.median(samples)

    known = measure("bob@example.com")
    unknown = measure("nobody@example.com")

    # Both paths pay one argon2 verification; allow generous noise
    assert unknown > known * 0.3
    assert known > unknown * 0.3


def test_unexpected_password_algo_fails(verifier, memory_store):
    user = verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")
    memory_store.update_password(user.id, "plaintext", password_algo="plain")

    with pytest.raises(InvalidCredentialsError):
        verifier.verify_credentials("bob@example.com", "plaintext")


def test_set_password_replaces_hash(verifier, memory_store):
    user = verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")

    verifier.set_password(user, "N3wPassword!")

    with pytest.raises(InvalidCredentialsError):
        verifier.verify_credentials("bob@example.com", "Passw0rd!")
    assert verifier.verify_credentials("bob@example.com", "N3wPassword!").id == user.id


def test_set_password_for_missing_user_is_server_error(verifier):
    user = verifier.register("bob@example.com", "Bobby", "Tables", "Passw0rd!")
    verifier.store = MemoryStore()

    with pytest.raises(ServerError):
        verifier.set_password(user, "N3wPassword!")
