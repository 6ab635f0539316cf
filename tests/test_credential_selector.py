from __future__ import annotations

import pytest

from trendfeed.errors import (
    CredentialNotFoundError,
    NoCredentialAvailableError,
    QuotaExceededError,
    UserQuotaExceededError,
)
from trendfeed.repositories.credential_repository import CredentialRepository
from trendfeed.repositories.database import Database
from trendfeed.repositories.quota_ledger_repository import QuotaLedgerRepository
from trendfeed.services.credential_selector import CredentialLease, CredentialSelector


def _selector(database: Database, *, daily_limit: int = 1_000, max_attempts: int = 2) -> CredentialSelector:
    return CredentialSelector(
        CredentialRepository(database),
        daily_limit=daily_limit,
        max_attempts=max_attempts,
    )


def test_select_server_prefers_least_used_credential(database: Database) -> None:
    repository = CredentialRepository(database)
    ledger = QuotaLedgerRepository(database, daily_limit=1_000)
    first = repository.upsert_server_credential("first", "key-first")
    second = repository.upsert_server_credential("second", "key-second")
    ledger.charge(first.id, 10)

    lease = _selector(database).select_server(on_behalf_of_user="user-1")

    assert lease.credential_id == second.id
    assert lease.api_key == "key-second"
    assert lease.owner_type == "SERVER"
    assert lease.name == "second"
    assert lease.on_behalf_of_user == "user-1"


def test_select_server_raises_when_pool_is_exhausted(database: Database) -> None:
    repository = CredentialRepository(database)
    ledger = QuotaLedgerRepository(database, daily_limit=1_000)
    only = repository.upsert_server_credential("only", "key-only")
    ledger.charge(only.id, 1_000)

    with pytest.raises(NoCredentialAvailableError):
        _selector(database).select_server()


def test_select_server_ignores_inactive_credentials(database: Database) -> None:
    CredentialRepository(database).upsert_server_credential("off", "key-off", is_active=False)

    with pytest.raises(NoCredentialAvailableError):
        _selector(database).select_server()


def test_select_user_requires_a_registered_key(database: Database) -> None:
    with pytest.raises(CredentialNotFoundError):
        _selector(database).select_user("user-1")


def test_select_user_rejects_exhausted_key(database: Database) -> None:
    repository = CredentialRepository(database)
    record = repository.upsert_user_credential("user-1", "key-user")
    QuotaLedgerRepository(database, daily_limit=1_000).charge(record.id, 1_000)

    with pytest.raises(QuotaExceededError) as exc_info:
        _selector(database).select_user("user-1")
    assert exc_info.value.credential_id == record.id


def test_select_user_returns_personal_lease(database: Database) -> None:
    record = CredentialRepository(database).upsert_user_credential("user-1", "key-user")

    lease = _selector(database).select_user("user-1")

    assert lease == CredentialLease(
        credential_id=record.id,
        owner_type="USER",
        api_key="key-user",
    )


def test_run_with_server_credential_reselects_once_on_quota_exhaustion(database: Database) -> None:
    repository = CredentialRepository(database)
    first = repository.upsert_server_credential("first", "key-first")
    second = repository.upsert_server_credential("second", "key-second")
    seen: list[int] = []

    def operation(lease: CredentialLease) -> str:
        seen.append(lease.credential_id)
        if lease.credential_id == first.id:
            raise QuotaExceededError("dry", credential_id=first.id)
        return lease.api_key

    result = _selector(database).run_with_server_credential(operation, on_behalf_of_user="user-1")

    assert result == "key-second"
    assert seen == [first.id, second.id]


def test_run_with_server_credential_gives_up_after_max_attempts(database: Database) -> None:
    repository = CredentialRepository(database)
    for name in ("a", "b", "c"):
        repository.upsert_server_credential(name, f"key-{name}")
    attempts: list[int] = []

    def operation(lease: CredentialLease) -> None:
        attempts.append(lease.credential_id)
        raise QuotaExceededError("dry", credential_id=lease.credential_id)

    with pytest.raises(QuotaExceededError):
        _selector(database, max_attempts=2).run_with_server_credential(operation)
    assert len(attempts) == 2
    assert len(set(attempts)) == 2


def test_run_with_server_credential_does_not_retry_user_allowance(database: Database) -> None:
    repository = CredentialRepository(database)
    repository.upsert_server_credential("a", "key-a")
    repository.upsert_server_credential("b", "key-b")
    attempts: list[int] = []

    def operation(lease: CredentialLease) -> None:
        attempts.append(lease.credential_id)
        raise UserQuotaExceededError("user allowance", user_id="user-1")

    with pytest.raises(UserQuotaExceededError):
        _selector(database).run_with_server_credential(operation, on_behalf_of_user="user-1")
    assert len(attempts) == 1


def test_run_with_server_credential_surfaces_pool_exhaustion(database: Database) -> None:
    only = CredentialRepository(database).upsert_server_credential("only", "key-only")

    def operation(lease: CredentialLease) -> None:
        raise QuotaExceededError("dry", credential_id=only.id)

    with pytest.raises(NoCredentialAvailableError):
        _selector(database).run_with_server_credential(operation)
