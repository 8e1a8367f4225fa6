"""Credential login state machine.

Strategies run in a strict order, cheapest and least suspicious first:
1) Session artifact restore (skipped when a fresh login is forced)
2) Cookie-jar restore, upgraded to a session artifact on success
3) Fresh username/password login, with challenge and two-factor resolution

A transient failure moves on to the next strategy. Fresh logins are the
riskiest call for automated-access detection, so a cooldown follows them
before anything else touches the network.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import pyotp

from core.config import LoginConfig
from core.errors import AuthFailure, ChallengeFailure, PersistenceError
from core.models import (
    ChallengeRequired,
    InvalidCredentials,
    LoginOutcome,
    LoginResult,
    LoginSuccess,
    TransientFailure,
    TwoFactorRequired,
)
from core.ports import IdentityStorePort, SourceClientPort

LOGGER = logging.getLogger(__name__)


def resolve_two_factor_code(config: LoginConfig) -> Optional[str]:
    """Return a verification code from configuration, or None.

    Order: static code, TOTP derived from the shared secret, interactive
    provider. Nothing is ever guessed.
    """

    if config.two_factor_code:
        return config.two_factor_code.strip()
    if config.totp_secret:
        return pyotp.TOTP(config.totp_secret.replace(" ", "")).now()
    if config.code_provider is not None:
        code = config.code_provider()
        if code and code.strip():
            return code.strip()
    return None


class LoginEngine:
    """Drives the source client through the ordered login fallbacks."""

    def __init__(
        self,
        client: SourceClientPort,
        identity: IdentityStorePort,
        config: LoginConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._identity = identity
        self._config = config
        self._sleep = sleep
        self.result: Optional[LoginResult] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.result.user_id if self.result else None

    async def authenticate(self) -> LoginResult:
        """Run the state machine to Authenticated, or raise on Failed."""

        if not self._config.username:
            raise AuthFailure("Source account username is missing")

        await self._ensure_device()

        if self._config.force_fresh_login:
            LOGGER.info("Fresh login forced, skipping stored sessions")
        else:
            user_id = await self._restore_session()
            if user_id is not None:
                return self._authenticated("session", user_id)
            user_id = await self._restore_cookies()
            if user_id is not None:
                return self._authenticated("cookies", user_id)

        if not self._config.password:
            raise AuthFailure("No valid session or cookies, and no password configured")

        return await self._fresh_login()

    def _authenticated(self, strategy: str, user_id: Optional[str]) -> LoginResult:
        self.result = LoginResult(strategy=strategy, user_id=user_id)
        LOGGER.info("Authenticated via %s as user %s", strategy, user_id)
        return self.result

    async def _ensure_device(self) -> None:
        account_id = self._config.username
        device = self._identity.load_device(account_id)
        if device is None:
            LOGGER.info("No usable device fingerprint for %s, generating one", account_id)
            device = await self._client.generate_device(account_id)
            try:
                self._identity.save_device(account_id, device)
            except PersistenceError:
                LOGGER.exception("Device fingerprint could not be saved")
        await self._client.apply_device(device)

    async def _restore_session(self) -> Optional[str]:
        artifact = self._identity.load_session()
        if artifact is None:
            LOGGER.info("No stored session artifact")
            return None
        try:
            await self._client.restore_session(artifact)
            return await self._client.probe_identity()
        except Exception as exc:
            LOGGER.warning("Session restore failed: %s", exc)
            return None

    async def _restore_cookies(self) -> Optional[str]:
        cookies = self._identity.load_cookies()
        if not cookies:
            LOGGER.info("No stored cookie jar")
            return None
        try:
            await self._client.restore_cookies(cookies)
            user_id = await self._client.probe_identity()
        except Exception as exc:
            LOGGER.warning("Cookie restore failed: %s", exc)
            return None
        # Cookie sessions are lower trust; upgrade them to a full artifact.
        await self._persist_session()
        return user_id

    async def _fresh_login(self) -> LoginResult:
        LOGGER.info("Attempting fresh login for %s", self._config.username)
        outcome = await self._client.login(self._config.username, self._config.password)
        await self._cool_down()

        if isinstance(outcome, ChallengeRequired):
            return await self._resolve_challenge(outcome)
        if isinstance(outcome, TwoFactorRequired):
            outcome = await self._resolve_two_factor(outcome)
            return await self._finish_fresh(outcome, "two_factor")
        return await self._finish_fresh(outcome, "fresh")

    async def _finish_fresh(self, outcome: LoginOutcome, strategy: str) -> LoginResult:
        if isinstance(outcome, LoginSuccess):
            user_id = outcome.user_id or await self._client.probe_identity()
            await self._persist_session()
            return self._authenticated(strategy, user_id)
        if isinstance(outcome, InvalidCredentials):
            raise AuthFailure(f"Invalid credentials: {outcome.message or 'rejected'}")
        if isinstance(outcome, TransientFailure):
            raise AuthFailure(f"All login strategies exhausted: {outcome.cause}")
        if isinstance(outcome, ChallengeRequired):
            raise ChallengeFailure(f"Unexpected challenge after {strategy}: {outcome.challenge_kind}")
        raise AuthFailure(f"Unexpected login outcome: {outcome!r}")

    async def _resolve_challenge(self, outcome: ChallengeRequired) -> LoginResult:
        LOGGER.warning("Challenge required (%s), trying automatic resolution", outcome.challenge_kind)
        try:
            resolved = await self._client.resolve_challenge(outcome.challenge_kind)
        except Exception as exc:
            raise ChallengeFailure(f"Challenge resolution errored: {exc}") from exc
        if not resolved:
            raise ChallengeFailure(
                f"Challenge {outcome.challenge_kind} needs manual intervention"
            )
        user_id = await self._client.probe_identity()
        await self._persist_session()
        return self._authenticated("challenge", user_id)

    async def _resolve_two_factor(self, outcome: TwoFactorRequired) -> LoginOutcome:
        LOGGER.info(
            "Two-factor required (methods: %s)",
            ", ".join(outcome.allowed_methods) or "unknown",
        )
        code = resolve_two_factor_code(self._config)
        if not code:
            raise AuthFailure("Two-factor code required but none is configured")
        return await self._client.two_factor_login(outcome.identifier, code)

    async def _persist_session(self) -> None:
        try:
            artifact = await self._client.export_session()
            self._identity.save_session(artifact)
        except PersistenceError:
            # Still authenticated; only the durable copy is missing.
            LOGGER.exception("Session artifact was not persisted")

    async def _cool_down(self) -> None:
        if self._config.fresh_login_cooldown > 0:
            LOGGER.info("Cooling down %.1fs after fresh login", self._config.fresh_login_cooldown)
            await self._sleep(self._config.fresh_login_cooldown)
