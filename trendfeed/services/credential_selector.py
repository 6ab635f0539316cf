from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import TypeVar

from trendfeed.errors import (
    CredentialNotFoundError,
    NoCredentialAvailableError,
    QuotaExceededError,
)
from trendfeed.repositories.credential_repository import CredentialRepository, OwnerType
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.credentials")

T = TypeVar("T")


@dataclass(frozen=True)
class CredentialLease:
    """A credential chosen for one unit of work.

    `on_behalf_of_user` is set only for server credentials spent for a user, so
    the ledger also charges that user's per-credential allowance.
    """

    credential_id: int
    owner_type: OwnerType
    api_key: str
    name: str | None = None
    on_behalf_of_user: str | None = None


class CredentialSelector:
    def __init__(
        self,
        credential_repository: CredentialRepository,
        *,
        daily_limit: int,
        max_attempts: int = 2,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._credentials = credential_repository
        self._daily_limit = daily_limit
        self._max_attempts = max(1, max_attempts)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def select_server(
        self,
        on_behalf_of_user: str | None = None,
        exclude: Collection[int] = (),
    ) -> CredentialLease:
        candidates = self._credentials.list_selectable_server_credentials(
            daily_limit=self._daily_limit,
            exclude=exclude,
        )
        if not candidates:
            self._telemetry.emit(
                "credentials.select.unavailable",
                excluded_count=len(exclude),
            )
            raise NoCredentialAvailableError(
                "No active server credential has quota left today."
            )

        chosen = candidates[0]
        LOGGER.debug(
            "server credential selected credential_id=%s usage=%s candidates=%s",
            chosen.id,
            chosen.usage,
            len(candidates),
        )
        return CredentialLease(
            credential_id=chosen.id,
            owner_type="SERVER",
            api_key=chosen.api_key,
            name=chosen.name,
            on_behalf_of_user=on_behalf_of_user,
        )

    def select_user(self, user_id: str) -> CredentialLease:
        credential = self._credentials.get_user_credential(user_id)
        if credential is None or not credential.is_active:
            raise CredentialNotFoundError("Register a YouTube API key before using keyword search.")
        if credential.usage >= self._daily_limit:
            raise QuotaExceededError(
                "Your API key has used its daily quota.",
                credential_id=credential.id,
            )
        return CredentialLease(
            credential_id=credential.id,
            owner_type="USER",
            api_key=credential.api_key,
        )

    def run_with_server_credential(
        self,
        operation: Callable[[CredentialLease], T],
        on_behalf_of_user: str | None = None,
    ) -> T:
        """Run `operation` with a server credential, reselecting when it runs dry.

        Only `QuotaExceededError` triggers a reselection, and the exhausted
        credential is excluded from the next pick. A user's own allowance
        running out is final for the request.
        """
        excluded: set[int] = set()
        attempt = 0
        while True:
            attempt += 1
            lease = self.select_server(on_behalf_of_user, exclude=excluded)
            try:
                return operation(lease)
            except QuotaExceededError:
                if attempt >= self._max_attempts:
                    raise
                excluded.add(lease.credential_id)
                LOGGER.info(
                    "server credential exhausted; reselecting credential_id=%s attempt=%s",
                    lease.credential_id,
                    attempt,
                )
                self._telemetry.emit(
                    "credentials.select.retry",
                    credential_id=lease.credential_id,
                    attempt=attempt,
                )
