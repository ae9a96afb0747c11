"""One-time code issuance and verification with abuse limits.

Records are keyed by the anonymous ``unauthorizedUserKey`` cookie. Every
refusal that mutates a record commits the mutation before raising, so a
client must not retry the step that failed; it should start a new send.
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Set

from fingerauth.logging import get_logger
from fingerauth.service.errors import (
    CodeExpiredError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from fingerauth.service.fingerprint import Fingerprint, matches
from fingerauth.storage.common import AuthStore, merge_emails
from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.models import OtpRecord

logger = get_logger(__name__)

ATTEMPTS_START_VALUE = 1
ATTEMPTS_INCREMENT_VALUE = 1
MAX_CODE_ATTEMPTS = 3
# A send attempted at MAX_MAIL_ATTEMPTS - 1 is refused and bumps the counter to the cap,
# so one fewer code than the cap is delivered
MAX_MAIL_ATTEMPTS = 5
SUSPICIOUSNESS_CHECK_LIMIT = 3
RESEND_COOLDOWN = timedelta(minutes=1)
CODE_TTL = timedelta(hours=1)
OTP_CODE_LENGTH = 4
_CREATE_RETRIES = 3


class CodeMailer(Protocol):
    def send_otp_code(
        self, to_email: str, code: str, locale: Optional[str] = None
    ) -> bool: ...


def generate_otp_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_CODE_LENGTH):0{OTP_CODE_LENGTH}d}"


def _first_fingerprint_match(
    candidates: List[OtpRecord], skip_id: int, raw_fingerprint: str
) -> Optional[OtpRecord]:
    for candidate in candidates:
        if candidate.id != skip_id and matches(raw_fingerprint, candidate.fingerprint):
            return candidate
    return None


class OtpService:
    def __init__(
        self,
        store: AuthStore,
        mailer: CodeMailer,
        *,
        code_factory: Callable[[], str] = generate_otp_code,
        send_in_background: bool = True,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.code_factory = code_factory
        self.send_in_background = send_in_background
        self._pending: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # mail delivery
    def _deliver(self, email: str, code: str, locale: Optional[str]) -> bool:
        try:
            sent = self.mailer.send_otp_code(email, code, locale)
        except Exception as exc:
            logger.error("otp_mail_send_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        if not sent:
            logger.warning("otp_mail_not_delivered")
        return sent

    def _dispatch_mail(self, email: str, code: str, locale: Optional[str]) -> None:
        if not self.send_in_background:
            self._deliver(email, code, locale)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(email, code, locale)
            return
        task = loop.create_task(asyncio.to_thread(self._deliver, email, code, locale))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for mails that are still being sent in the background."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # shared checks
    def _mail_limit(self, **log_fields) -> RateLimitedError:
        logger.warning("otp_mail_limit_reached", **log_fields)
        return RateLimitedError.from_key("otp.mail_limit")

    async def large_mail_attempts(self, record: OtpRecord) -> None:
        if record.mail_attempts >= MAX_MAIL_ATTEMPTS:
            raise self._mail_limit(record_id=record.id, mail_attempts=record.mail_attempts)

    async def last_mail_attempts(self, record: OtpRecord) -> None:
        if record.mail_attempts == MAX_MAIL_ATTEMPTS - ATTEMPTS_INCREMENT_VALUE:
            self.store.update_otp_record(
                record.id,
                increment_mail_attempts=True,
                code_attempts=ATTEMPTS_START_VALUE,
            )
            raise self._mail_limit(record_id=record.id, mail_attempts=record.mail_attempts + 1)

    async def cooldown(self, record: OtpRecord) -> None:
        if self._now() - record.updated_at < RESEND_COOLDOWN:
            raise RateLimitedError.from_key("otp.resend_cooldown")

    async def block_suspicious(
        self, record: OtpRecord, email: str, raw_fingerprint: str
    ) -> None:
        """Refuse a device that already exhausted the mail cap under another key."""
        if record.mail_attempts >= SUSPICIOUSNESS_CHECK_LIMIT:
            return
        candidates = self.store.list_otp_records(
            MAX_MAIL_ATTEMPTS,
            email_contains=email if record.mail_attempts == ATTEMPTS_START_VALUE else None,
        )
        # one bcrypt check per candidate, kept off the event loop
        match = await asyncio.to_thread(
            _first_fingerprint_match, candidates, record.id, raw_fingerprint
        )
        if match is not None:
            self.store.update_otp_record(
                record.id, mail_attempts=MAX_MAIL_ATTEMPTS + ATTEMPTS_INCREMENT_VALUE
            )
            raise self._mail_limit(record_id=record.id, suspicious_match=match.id)

    async def regenerate(
        self, record: OtpRecord, email: str, *, locale: Optional[str] = None
    ) -> OtpRecord:
        code = self.code_factory()
        updated = self.store.update_otp_record(
            record.id,
            increment_mail_attempts=True,
            otp_code=code,
            code_attempts=ATTEMPTS_START_VALUE,
        )
        logger.info("otp_code_regenerated", record_id=record.id)
        self._dispatch_mail(email, code, locale)
        return updated or record

    # flows
    async def get_and_send_otp(
        self,
        email: str,
        user_key: str,
        fingerprint: Fingerprint,
        *,
        locale: Optional[str] = None,
    ) -> OtpRecord:
        for _ in range(_CREATE_RETRIES):
            code = self.code_factory()
            record = self.store.get_otp_record_by_key(user_key)
            if record:
                await self.large_mail_attempts(record)
                await self.last_mail_attempts(record)
                await self.cooldown(record)
                updated = self.store.update_otp_record(
                    record.id,
                    increment_mail_attempts=True,
                    code_attempts=ATTEMPTS_START_VALUE,
                    otp_code=code,
                    fingerprint=fingerprint.hashed,
                    emails=merge_emails(record.emails, email),
                )
                if updated is None:
                    continue
                record = updated
            else:
                try:
                    record = self.store.create_otp_record(
                        user_key, email, code, fingerprint.hashed
                    )
                except ConstraintViolation:
                    logger.info("otp_record_create_race")
                    continue
            await self.block_suspicious(record, email, fingerprint.raw)
            logger.info(
                "otp_code_issued", record_id=record.id, mail_attempts=record.mail_attempts
            )
            self._dispatch_mail(email, code, locale)
            return record
        raise ServerError("could not store otp record")

    async def check_otp_code(
        self,
        email: str,
        otp_code: str,
        user_key: str,
        raw_fingerprint: str,
        *,
        locale: Optional[str] = None,
    ) -> OtpRecord:
        record = self.store.get_otp_record_by_key(user_key)
        if not record or email not in record.emails or record.otp_code is None:
            raise NotFoundError.from_key("otp.invalid_info")

        await self.large_mail_attempts(record)
        await self.block_suspicious(record, email, raw_fingerprint)

        if self._now() - record.updated_at > CODE_TTL:
            await self.last_mail_attempts(record)
            await self.regenerate(record, email, locale=locale)
            raise CodeExpiredError.from_key("otp.code_expired", email=email)

        if record.otp_code != otp_code:
            if record.code_attempts >= MAX_CODE_ATTEMPTS:
                await self.last_mail_attempts(record)
                await self.regenerate(record, email, locale=locale)
                raise InvalidCodeError.from_key("otp.code_resent", email=email)
            self.store.update_otp_record(record.id, increment_code_attempts=True)
            raise InvalidCodeError.from_key("otp.invalid_code")

        consumed = self.store.update_otp_record(
            record.id, otp_code=None, code_attempts=ATTEMPTS_START_VALUE
        )
        logger.info("otp_code_verified", record_id=record.id)
        return consumed or record

    # administration
    async def list_suspicious(
        self,
        *,
        search_mail: Optional[str] = None,
        order_by: str = "desc",
        page: int = 1,
        page_size: int = 10,
    ) -> List[OtpRecord]:
        return self.store.list_otp_records(
            MAX_MAIL_ATTEMPTS,
            email_contains=search_mail or None,
            limit=page_size,
            offset=(max(page, 1) - 1) * page_size,
            newest_first=order_by != "asc",
        )

    async def reset_record(self, record_id: int) -> OtpRecord:
        record = self.store.update_otp_record(
            record_id,
            mail_attempts=ATTEMPTS_START_VALUE,
            code_attempts=ATTEMPTS_START_VALUE,
            otp_code=None,
        )
        if not record:
            raise NotFoundError.from_key("otp.record_not_found")
        logger.info("otp_record_reset", record_id=record_id)
        return record
