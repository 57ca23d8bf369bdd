"""
Auth callback, session guard and sign-up flows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import bcrypt

from memopad.platform import AuthSession, AuthUser, PlatformClient, PlatformError

logger = logging.getLogger(__name__)

SIGNUP_SUCCESS_MESSAGE = "Sign-up succeeded!"
DEFAULT_HASH_ROUNDS = 10
# bcrypt only looks at the first 72 bytes.
BCRYPT_MAX_BYTES = 72


def hash_password(password: str, rounds: int = DEFAULT_HASH_ROUNDS) -> str:
    secret = password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(secret, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


async def exchange_code(platform: PlatformClient, code: Optional[str]) -> AuthSession:
    """Trade an authorization code for a session. Raises PlatformError."""
    try:
        return await platform.exchange_code_for_session(code or "")
    except PlatformError as exc:
        logger.error("Auth code exchange failed: %s", exc.message)
        raise


@dataclass
class HomeView:
    """Outcome of the session check: an identity to show, or a redirect."""

    user: Optional[AuthUser] = None
    redirect_to: Optional[str] = None


async def check_session(
    platform: PlatformClient, access_token: Optional[str], signup_path: str
) -> HomeView:
    session = await platform.get_session(access_token)
    if session is None:
        return HomeView(redirect_to=signup_path)
    return HomeView(user=session.user)


@dataclass
class SignUpResult:
    email: str
    username: str
    user: Optional[AuthUser] = None
    profile_saved: bool = False
    error: Optional[str] = None

    @property
    def account_created(self) -> bool:
        return self.user is not None

    @property
    def ok(self) -> bool:
        return self.error is None


async def save_profile(
    platform: PlatformClient,
    email: str,
    username: str,
    password_hash: Optional[str],
    users_table: str = "users",
    upsert: bool = False,
) -> None:
    """
    Write the profile row.

    A plain insert by default. With ``upsert`` the row is merged on email,
    which needs a unique constraint on ``users.email`` in the platform schema.
    """
    row = {"email": email, "username": username}
    if password_hash is not None:
        row["password_hash"] = password_hash
    if upsert:
        await platform.upsert(users_table, row, on_conflict="email")
    else:
        await platform.insert(users_table, [row])


async def register_user(
    platform: PlatformClient,
    email: str,
    username: str,
    password: str,
    *,
    users_table: str = "users",
    rounds: int = DEFAULT_HASH_ROUNDS,
    store_password_hash: bool = True,
    upsert_profile: bool = False,
) -> SignUpResult:
    """
    Create the platform account, then the profile row.

    The two writes are not transactional. When the account exists but the
    profile write failed, the result carries both ``account_created`` and
    ``error`` so the caller can tell the cases apart.
    """
    result = SignUpResult(email=email, username=username)
    password_hash = None
    if store_password_hash:
        # bcrypt is CPU-bound; keep it off the event loop.
        password_hash = await asyncio.to_thread(hash_password, password, rounds)
    try:
        result.user = await platform.sign_up(email, password)
        await save_profile(
            platform, email, username, password_hash, users_table, upsert=upsert_profile
        )
    except PlatformError as exc:
        result.error = exc.message
        if result.account_created:
            logger.warning(
                "Account %s created but profile write failed: %s", email, exc.message
            )
        else:
            logger.info("Sign-up rejected for %s: %s", email, exc.message)
        return result
    result.profile_saved = True
    logger.info("User registered: %s", result.user.id)
    return result
