"""
Local account backend.

Stores accounts in the ``accounts`` table with a salted password hash.
Implements the AccountCreator protocol used by the OTP service.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from passlib.context import CryptContext

from signup_otp.db import from_db_time, storage_call, to_db_time, utcnow
from signup_otp.errors import AccountCreationError, StorageUnavailable
from signup_otp.models import Account

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class LocalAccountCreator:
    def __init__(
        self,
        *,
        signup_source: str = "otp_signup",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._signup_source = signup_source
        self._clock = clock

    async def exists(self, email: str) -> bool:
        async with storage_call("accounts.exists") as db:
            async with db.execute(
                "SELECT 1 FROM accounts WHERE email = ? LIMIT 1", (email,)
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def create(self, email: str, password: str) -> Account:
        # Hashing is CPU-bound; keep it off the event loop.
        password_hash = await asyncio.to_thread(pwd_context.hash, password)
        account_id = str(uuid4())
        now = to_db_time(self._clock())

        try:
            async with storage_call("accounts.create") as db:
                await db.execute(
                    """
                    INSERT INTO accounts
                        (id, email, password_hash, signup_source, email_verified_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (account_id, email, password_hash, self._signup_source, now, now),
                )
        except StorageUnavailable as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                logger.info("Account for %s already exists", email)
                raise AccountCreationError("account already exists") from exc
            raise AccountCreationError("account storage unavailable") from exc

        logger.info("Created account %s for %s", account_id, email)
        return Account(id=account_id, email=email, created_at=from_db_time(now))
