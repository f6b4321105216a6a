"""
MFA Challenge Engine.

Issues one challenge per MFA gate and verifies responses against it. The
engine never touches access requests directly: outcomes are reported to a
listener (the lifecycle manager), after the challenge lock is released.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Set

from jitguard.models.access_models import (
    AccessRequest,
    ChallengeStatus,
    MFAChallenge,
    MFAMethod,
    MFAVerificationResult,
    PrivilegedRole,
)
from jitguard.models.event_models import AuditEvent, AuditEventType, EventSeverity
from jitguard.services.audit_emitter import EventDispatcher
from jitguard.services.collaborators import MFAProvider
from jitguard.utils.clock import Clock
from jitguard.utils.errors import (
    ChallengeNotPendingError,
    MFAAttemptsExhaustedError,
    MFAChallengeExpiredError,
    NotFoundError,
    TransientCollaboratorFailure,
    ValidationError,
)
from jitguard.utils.logging_config import MetricsCollector


logger = logging.getLogger(__name__)


def generate_challenge_code(method: MFAMethod) -> str:
    if method in (MFAMethod.TOTP, MFAMethod.SMS, MFAMethod.EMAIL):
        return str(100000 + secrets.randbelow(900000))
    if method == MFAMethod.PUSH:
        return str(uuid.uuid4())
    return secrets.token_hex(6)


class MFAListener(Protocol):
    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        ...

    async def on_mfa_verified(self, challenge: MFAChallenge) -> None:
        ...

    async def on_mfa_exhausted(self, challenge: MFAChallenge) -> Optional[MFAChallenge]:
        """Deny the owning request, or return a replacement challenge."""
        ...

    async def on_mfa_expired(self, challenge: MFAChallenge) -> Optional[AccessRequest]:
        ...


class LocalMFAProvider:
    """In-process provider for primary codes and one-time backup codes.

    Primary codes are compared in constant time. Backup codes are stored as
    SHA-256 digests and consumed on first successful use.
    """

    def __init__(self):
        self._backup_codes: Dict[str, Set[str]] = {}

    @staticmethod
    def _digest(code: str) -> str:
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    def enroll_backup_codes(self, principal_id: str, codes: Iterable[str]) -> None:
        store = self._backup_codes.setdefault(principal_id, set())
        store.update(self._digest(c) for c in codes)

    def generate_backup_codes(self, principal_id: str, count: int = 10) -> List[str]:
        codes = [secrets.token_hex(5) for _ in range(count)]
        self.enroll_backup_codes(principal_id, codes)
        return codes

    def remaining_backup_codes(self, principal_id: str) -> int:
        return len(self._backup_codes.get(principal_id, ()))

    async def verify_code(
        self, method: MFAMethod, challenge_code: str, user_response: str
    ) -> bool:
        if user_response is None:
            return False
        return hmac.compare_digest(
            challenge_code.encode("utf-8"), str(user_response).encode("utf-8")
        )

    async def verify_backup(
        self, principal_id: str, backup_method: MFAMethod, backup_code: str
    ) -> bool:
        store = self._backup_codes.get(principal_id)
        if not store or not backup_code:
            return False
        digest = self._digest(backup_code)
        for stored in list(store):
            if hmac.compare_digest(stored, digest):
                store.discard(stored)
                return True
        return False


class MFAChallengeEngine:
    """Issues and verifies MFA challenges."""

    def __init__(
        self,
        clock: Clock,
        provider: MFAProvider,
        dispatcher: EventDispatcher,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: int = 3,
        failure_tracker=None,
    ):
        self.clock = clock
        self.provider = provider
        self.dispatcher = dispatcher
        self.metrics = metrics or MetricsCollector()
        self.max_attempts = max_attempts
        self.failure_tracker = failure_tracker
        self._listener: Optional[MFAListener] = None
        self._challenges: Dict[str, MFAChallenge] = {}
        # Guards the challenge table; never held across a provider call
        self._lock = asyncio.Lock()
        # Serializes verifications of one challenge
        self._verify_locks: Dict[str, asyncio.Lock] = {}

    def attach(self, listener: MFAListener) -> None:
        self._listener = listener

    def issue(
        self, request: AccessRequest, role: PrivilegedRole, reissue_count: int = 0
    ) -> MFAChallenge:
        """Create a pending challenge for request using the role's methods."""
        if not role.allowed_mfa_methods:
            raise ValidationError(f"Role {role.id} allows no MFA methods")
        now = self.clock.now()
        method = role.allowed_mfa_methods[0]
        challenge = MFAChallenge(
            id=str(uuid.uuid4()),
            access_request_id=request.id,
            principal_id=request.principal_id,
            method=method,
            challenge_code=generate_challenge_code(method),
            created_at=now,
            expires_at=now + timedelta(minutes=role.mfa_validity_minutes),
            max_attempts=self.max_attempts,
            backup_methods_available=tuple(m for m in role.allowed_mfa_methods if m != method),
            reissue_count=reissue_count,
        )
        self._challenges[challenge.id] = challenge
        self._verify_locks[challenge.id] = asyncio.Lock()
        self.metrics.increment_counter("mfa_challenges_issued")

        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.MFA_CHALLENGE_ISSUED.value,
                severity=EventSeverity.MEDIUM,
                actor="system",
                timestamp=now,
                risk_score=request.risk_score,
                tags=["mfa", method.value],
                details={
                    "challenge_id": challenge.id,
                    "request_id": request.id,
                    "method": method.value,
                    "expires_at": challenge.expires_at.isoformat(),
                    "reissue_count": reissue_count,
                },
            )
        )
        logger.info(
            f"MFA challenge {challenge.id} issued for request {request.id} via {method.value}"
        )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        return self._challenges.get(challenge_id)

    def cancel(self, challenge_id: Optional[str]) -> bool:
        """Close a pending challenge without a verdict (request revoked)."""
        challenge = self._challenges.get(challenge_id) if challenge_id else None
        if challenge is None or challenge.status != ChallengeStatus.PENDING:
            return False
        challenge.status = ChallengeStatus.FAILED
        challenge.closed_at = self.clock.now()
        logger.info(f"MFA challenge {challenge.id} cancelled")
        return True

    async def verify(
        self,
        challenge_id: str,
        response: Optional[str] = None,
        backup_method: Optional[MFAMethod] = None,
        backup_code: Optional[str] = None,
    ) -> MFAVerificationResult:
        """Verify a response against a pending challenge.

        Raises:
            NotFoundError: Unknown challenge id
            ChallengeNotPendingError: Challenge already verified, failed or expired
            MFAChallengeExpiredError: Challenge expired; owning request denied
            MFAAttemptsExhaustedError: Last attempt failed; owning request denied
            TransientCollaboratorFailure: The MFA provider raised
            ValidationError: Unknown backup method
        """
        if backup_method is not None:
            try:
                backup_method = MFAMethod(backup_method)
            except ValueError:
                raise ValidationError(f"Unknown MFA backup method: {backup_method!r}")

        verify_lock = self._verify_locks.get(challenge_id)
        if verify_lock is None:
            raise NotFoundError(f"MFA challenge not found: {challenge_id}")

        async with verify_lock:
            async with self._lock:
                challenge = self._challenges.get(challenge_id)
                if challenge is None:
                    raise NotFoundError(f"MFA challenge not found: {challenge_id}")
                self._require_pending(challenge)

                now = self.clock.now()
                if challenge.expires_at <= now:
                    challenge.status = ChallengeStatus.EXPIRED
                    challenge.closed_at = now
                    expired = True
                else:
                    expired = False
                    challenge.attempts += 1

            if expired:
                return await self._handle_expired(challenge)

            provider_error = None
            try:
                verified = await self._check(challenge, response, backup_method, backup_code)
            except Exception as e:
                logger.error(f"MFA provider failed for challenge {challenge.id}: {e}")
                self.metrics.increment_counter("mfa_provider_errors")
                verified = False
                provider_error = e

            async with self._lock:
                # Cancelled or expired while the provider was being consulted
                self._require_pending(challenge)
                now = self.clock.now()
                if verified:
                    challenge.status = ChallengeStatus.VERIFIED
                    challenge.verified_at = now
                    challenge.closed_at = now
                    if backup_method is not None:
                        challenge.backup_method_used = backup_method
                elif challenge.attempts >= challenge.max_attempts:
                    challenge.status = ChallengeStatus.FAILED
                    challenge.closed_at = now

        if verified:
            return await self._handle_verified(challenge)
        return await self._handle_failed(challenge, provider_error)

    @staticmethod
    def _require_pending(challenge: MFAChallenge) -> None:
        if challenge.status != ChallengeStatus.PENDING:
            raise ChallengeNotPendingError(
                f"Invalid challenge status: {challenge.status.value}",
                status=challenge.status.value,
            )

    async def _check(
        self,
        challenge: MFAChallenge,
        response: Optional[str],
        backup_method: Optional[MFAMethod],
        backup_code: Optional[str],
    ) -> bool:
        if backup_method is not None:
            if backup_method not in challenge.backup_methods_available:
                logger.warning(
                    f"Backup method {backup_method.value} not available for challenge {challenge.id}"
                )
                return False
            return await self.provider.verify_backup(
                challenge.principal_id, backup_method, backup_code or ""
            )
        return await self.provider.verify_code(
            challenge.method, challenge.challenge_code, response or ""
        )

    def _result(self, challenge: MFAChallenge, replacement: Optional[str] = None):
        return MFAVerificationResult(
            verified=challenge.status == ChallengeStatus.VERIFIED,
            challenge_id=challenge.id,
            status=challenge.status,
            attempts=challenge.attempts,
            attempts_remaining=challenge.attempts_remaining,
            method=challenge.backup_method_used or challenge.method,
            replacement_challenge_id=replacement,
        )

    async def _handle_expired(self, challenge: MFAChallenge) -> MFAVerificationResult:
        self.metrics.increment_counter("mfa_expired")
        self._record_failure(challenge)
        logger.warning(f"MFA challenge {challenge.id} expired before verification")
        request = None
        if self._listener is not None:
            request = await self._listener.on_mfa_expired(challenge)
        raise MFAChallengeExpiredError(
            "MFA challenge expired", request=request, reason="mfa_challenge_expired"
        )

    async def _handle_verified(self, challenge: MFAChallenge) -> MFAVerificationResult:
        self.metrics.increment_counter("mfa_verified")
        method = challenge.backup_method_used or challenge.method
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.MFA_VERIFIED.value,
                severity=EventSeverity.LOW,
                actor=challenge.principal_id,
                timestamp=challenge.verified_at,
                tags=["mfa"],
                details={
                    "challenge_id": challenge.id,
                    "request_id": challenge.access_request_id,
                    "method": method.value,
                    "attempts": challenge.attempts,
                },
            )
        )
        logger.info(
            f"MFA verification successful for challenge {challenge.id} "
            f"after {challenge.attempts} attempt(s)"
        )
        if self._listener is not None:
            await self._listener.on_mfa_verified(challenge)
        return self._result(challenge)

    async def _handle_failed(
        self, challenge: MFAChallenge, provider_error: Optional[Exception]
    ) -> MFAVerificationResult:
        self.metrics.increment_counter("mfa_failures")
        self._record_failure(challenge)
        exhausted = challenge.status == ChallengeStatus.FAILED
        logger.warning(
            f"MFA verification failed for challenge {challenge.id} "
            f"({challenge.attempts}/{challenge.max_attempts})"
        )
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.MFA_FAILED.value,
                severity=EventSeverity.MEDIUM,
                actor=challenge.principal_id,
                timestamp=self.clock.now(),
                tags=["mfa"],
                details={
                    "challenge_id": challenge.id,
                    "request_id": challenge.access_request_id,
                    "attempts": challenge.attempts,
                    "max_attempts": challenge.max_attempts,
                    "provider_error": str(provider_error) if provider_error else None,
                },
            )
        )

        replacement = None
        if exhausted and self._listener is not None:
            replacement = await self._listener.on_mfa_exhausted(challenge)

        if provider_error is not None:
            raise TransientCollaboratorFailure(
                f"MFA provider error: {provider_error}", collaborator="mfa_provider"
            )
        if exhausted and replacement is None:
            request = None
            if self._listener is not None:
                request = self._listener.get_request(challenge.access_request_id)
            raise MFAAttemptsExhaustedError(
                "MFA attempts exhausted", request=request, reason="mfa_attempts_exhausted"
            )
        return self._result(challenge, replacement.id if replacement else None)

    def _record_failure(self, challenge: MFAChallenge) -> None:
        if self.failure_tracker is not None:
            self.failure_tracker.record_failure(challenge.principal_id, self.clock.now())

    async def expire_stale(self, now: datetime) -> int:
        """Expire pending challenges past their deadline. Returns the count."""
        stale: List[MFAChallenge] = []
        async with self._lock:
            for challenge in self._challenges.values():
                if challenge.status == ChallengeStatus.PENDING and challenge.expires_at <= now:
                    challenge.status = ChallengeStatus.EXPIRED
                    challenge.closed_at = now
                    stale.append(challenge)
        for challenge in stale:
            self.metrics.increment_counter("mfa_expired")
            if self._listener is not None:
                await self._listener.on_mfa_expired(challenge)
        return len(stale)

    def reap(self, cutoff: datetime) -> int:
        """Drop closed challenges created before cutoff."""
        doomed = [
            cid
            for cid, c in self._challenges.items()
            if c.status != ChallengeStatus.PENDING and c.created_at < cutoff
        ]
        for cid in doomed:
            del self._challenges[cid]
            self._verify_locks.pop(cid, None)
        return len(doomed)

    def pending_count(self) -> int:
        return sum(1 for c in self._challenges.values() if c.status == ChallengeStatus.PENDING)
