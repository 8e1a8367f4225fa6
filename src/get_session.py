import asyncio
import logging
from getpass import getpass
from typing import Optional

from dotenv import load_dotenv

import settings
from adapters.identity_store import FileIdentityStore
from adapters.instagram_client import InstagramClient
from core.config import LoginConfig
from core.login import LoginEngine
from core.models import LoginResult


load_dotenv()


def _prompt_2fa_code() -> Optional[str]:
    return input("Instagram 2FA code: ").strip() or None


def _prompt_challenge_code(username: str, choice) -> str:
    return input(f"Challenge code sent to {username} via {choice}: ").strip()


def _resolve_password(interactive: bool) -> Optional[str]:
    password = settings.IG_PASSWORD
    if password or not interactive:
        return password
    return getpass("Instagram password: ") or None


def build_identity_store() -> FileIdentityStore:
    return FileIdentityStore(settings.DEVICE_PATH, settings.SESSION_PATH, settings.COOKIES_PATH)


def build_source_client(interactive: bool = False) -> InstagramClient:
    return InstagramClient(
        proxy=settings.IG_PROXY,
        foreground_poll_interval=settings.FOREGROUND_POLL_INTERVAL,
        background_poll_interval=settings.BACKGROUND_POLL_INTERVAL,
        thread_amount=settings.THREAD_AMOUNT,
        thread_message_limit=settings.THREAD_MESSAGE_LIMIT,
        history_backfill_limit=settings.HISTORY_BACKFILL_LIMIT,
        request_delay=settings.REQUEST_DELAY,
        challenge_code_handler=_prompt_challenge_code if interactive else None,
    )


def build_login_config(interactive: bool = False, force_fresh: Optional[bool] = None) -> LoginConfig:
    return LoginConfig(
        username=settings.IG_USERNAME or (input("Instagram username: ").strip() if interactive else ""),
        password=_resolve_password(interactive),
        force_fresh_login=settings.FORCE_FRESH_LOGIN if force_fresh is None else force_fresh,
        two_factor_code=settings.IG_2FA_CODE,
        totp_secret=settings.IG_TOTP_SECRET,
        fresh_login_cooldown=settings.FRESH_LOGIN_COOLDOWN,
        code_provider=_prompt_2fa_code if interactive else None,
    )


async def authorize(force_fresh: bool = False) -> LoginResult:
    """Log in once interactively and persist the session for `run`."""

    client = build_source_client(interactive=True)
    engine = LoginEngine(client, build_identity_store(), build_login_config(True, force_fresh))
    return await engine.authenticate()


async def main() -> None:
    result = await authorize()
    logging.info(f"Logged in as user {result.user_id} via {result.strategy}")


if __name__ == "__main__":
    asyncio.run(main())
