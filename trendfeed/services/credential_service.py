from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from trendfeed.errors import CredentialNotFoundError, InvalidApiKeyError, InvalidRequestError
from trendfeed.repositories.credential_repository import CredentialRecord, CredentialRepository
from trendfeed.repositories.quota_ledger_repository import (
    QuotaLedgerRepository,
    QuotaResetResult,
    UserServerUsage,
)
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.credentials")


@dataclass(frozen=True)
class UserUsageReport:
    usage_date: str
    personal_credential: CredentialRecord | None
    daily_limit: int
    server_usage: list[UserServerUsage]


class CredentialService:
    def __init__(
        self,
        *,
        credential_repository: CredentialRepository,
        ledger: QuotaLedgerRepository,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._credentials = credential_repository
        self._ledger = ledger
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def register_user_key(self, user_id: str, api_key: str) -> CredentialRecord:
        normalized = _normalize_api_key(api_key)
        record = self._credentials.upsert_user_credential(user_id, normalized)
        LOGGER.info("user credential saved credential_id=%s", record.id)
        return record

    def delete_user_key(self, user_id: str) -> None:
        if not self._credentials.delete_user_credential(user_id):
            raise CredentialNotFoundError("No personal API key is registered.")
        LOGGER.info("user credential deleted")

    def user_usage(self, user_id: str) -> UserUsageReport:
        return UserUsageReport(
            usage_date=self._ledger.usage_date(),
            personal_credential=self._credentials.get_user_credential(user_id),
            daily_limit=self._ledger.daily_limit,
            server_usage=self._ledger.user_usage_today(user_id),
        )

    def upsert_server_key(self, name: str, api_key: str, *, is_active: bool = True) -> CredentialRecord:
        normalized_name = name.strip()
        if not normalized_name:
            raise InvalidRequestError("Server credentials need a name.")
        record = self._credentials.upsert_server_credential(
            normalized_name,
            _normalize_api_key(api_key),
            is_active=is_active,
        )
        LOGGER.info(
            "server credential saved name=%s credential_id=%s active=%s",
            record.name,
            record.id,
            record.is_active,
        )
        return record

    def revoke_server_key(self, name: str) -> None:
        if not self._credentials.delete_server_credential(name.strip()):
            raise CredentialNotFoundError(f"No server credential named {name!r}.")
        LOGGER.info("server credential revoked name=%s", name)

    def server_usage(self) -> list[CredentialRecord]:
        return self._credentials.list_server_credentials()

    def seed_server_keys(self, keys: Mapping[str, str]) -> int:
        """Make sure every configured `name=key` pair exists; existing usage is kept."""
        seeded = 0
        for name, api_key in keys.items():
            existing = self._credentials.get_server_credential(name)
            if existing is not None and existing.api_key == api_key:
                continue
            self.upsert_server_key(name, api_key)
            seeded += 1
        return seeded

    def reset_quota(self) -> QuotaResetResult:
        result = self._ledger.reset_all()
        LOGGER.info(
            "quota counters reset server_count=%s user_count=%s",
            result.server_count,
            result.user_count,
        )
        self._telemetry.emit(
            "quota.reset.finish",
            server_count=result.server_count,
            user_count=result.user_count,
        )
        return result


def _normalize_api_key(api_key: str) -> str:
    normalized = api_key.strip() if isinstance(api_key, str) else ""
    if not normalized:
        raise InvalidApiKeyError("API key must not be empty.")
    return normalized
