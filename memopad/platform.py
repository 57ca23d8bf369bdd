"""
Client contract for the hosted backend platform.

Provides an in-memory implementation for development and tests and a
Supabase-backed implementation for production.
"""

from __future__ import annotations

import itertools
import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

INSERT = "INSERT"
DELETE = "DELETE"
CHANGE_EVENTS = (INSERT, DELETE)

SESSION_TTL_SECONDS = 3600
MIN_PASSWORD_LENGTH = 6


class PlatformError(Exception):
    """Raised when the platform rejects or fails a request."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass
class AuthUser:
    id: str
    email: str

    def as_dict(self) -> dict:
        return {"id": self.id, "email": self.email}


@dataclass
class AuthSession:
    access_token: str
    user: AuthUser
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None


@dataclass
class ChangeEvent:
    """A row-level change delivered by the live feed."""

    event_type: str
    table: str
    new: dict = field(default_factory=dict)
    old: dict = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for a standing change-feed subscription.

    The owner must call ``unsubscribe`` when it stops displaying the data;
    repeated calls are no-ops.
    """

    def __init__(self, table: str, release: Callable[[], Awaitable[None]]):
        self.table = table
        self._release = release
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._release()


class PlatformClient(Protocol):
    """Operations the pages need from the backend platform."""

    async def exchange_code_for_session(self, code: str) -> AuthSession:
        ...

    async def get_session(self, access_token: Optional[str]) -> Optional[AuthSession]:
        ...

    async def sign_up(self, email: str, password: str) -> AuthUser:
        ...

    async def insert(self, table: str, rows: list[dict]) -> list[dict]:
        ...

    async def upsert(self, table: str, row: dict, on_conflict: str) -> list[dict]:
        ...

    async def select(
        self, table: str, order_by: Optional[str] = None, descending: bool = False
    ) -> list[dict]:
        ...

    async def delete(self, table: str, column: str, value: Any) -> list[dict]:
        ...

    async def subscribe(
        self, table: str, events: Iterable[str], callback: ChangeCallback
    ) -> Subscription:
        ...

    async def close(self) -> None:
        ...


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_events(events: Iterable[str]) -> frozenset[str]:
    wanted = frozenset(event.upper() for event in events)
    unknown = wanted - set(CHANGE_EVENTS)
    if not wanted or unknown:
        raise ValueError(f"Unsupported change events: {sorted(unknown) or 'none'}")
    return wanted


class InMemoryPlatformClient:
    """Simple in-process platform for development and tests.

    Tables are lists of dicts. Change events are delivered synchronously to
    subscribers from inside ``insert``/``upsert``/``delete``.
    """

    def __init__(self):
        self.tables: Dict[str, list[dict]] = {}
        self.accounts: Dict[str, AuthUser] = {}
        self.sessions: Dict[str, AuthSession] = {}
        self.auth_codes: Dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._listeners: Dict[int, tuple[str, frozenset[str], ChangeCallback]] = {}
        self._last_ids: Dict[str, int] = {}
        self._listener_ids = itertools.count(1)
        self._lock = threading.RLock()

    # Auth

    def issue_auth_code(self, email: str) -> str:
        """Mint a one-shot authorization code, as the confirmation link would."""
        with self._lock:
            if email not in self.accounts:
                raise PlatformError("User not found")
            code = secrets.token_urlsafe(16)
            self.auth_codes[code] = email
            return code

    async def exchange_code_for_session(self, code: str) -> AuthSession:
        with self._lock:
            self.calls.append(("exchange_code_for_session", "auth"))
            email = self.auth_codes.pop(code, None)
            if email is None:
                raise PlatformError("invalid flow state, no valid flow state found")
            session = AuthSession(
                access_token=secrets.token_urlsafe(32),
                refresh_token=secrets.token_urlsafe(16),
                user=self.accounts[email],
                expires_at=int(time.time()) + SESSION_TTL_SECONDS,
            )
            self.sessions[session.access_token] = session
            return session

    async def get_session(self, access_token: Optional[str]) -> Optional[AuthSession]:
        with self._lock:
            self.calls.append(("get_session", "auth"))
            if not access_token:
                return None
            session = self.sessions.get(access_token)
            if session and session.expires_at and session.expires_at < time.time():
                return None
            return session

    async def sign_up(self, email: str, password: str) -> AuthUser:
        with self._lock:
            self.calls.append(("sign_up", "auth"))
            if not email:
                raise PlatformError("Signup requires a valid email")
            if len(password or "") < MIN_PASSWORD_LENGTH:
                raise PlatformError(
                    f"Password should be at least {MIN_PASSWORD_LENGTH} characters."
                )
            if email in self.accounts:
                raise PlatformError("User already registered")
            user = AuthUser(id=str(uuid.uuid4()), email=email)
            self.accounts[email] = user
            return user

    # Tables

    def _assign_id(self, table: str, record: dict) -> None:
        """Sequence-style ids: never reused, and always past any explicit id."""
        last = self._last_ids.get(table, 0)
        if "id" not in record:
            record["id"] = last + 1
        if isinstance(record["id"], int):
            self._last_ids[table] = max(last, record["id"])

    async def insert(self, table: str, rows: list[dict]) -> list[dict]:
        created: list[dict] = []
        with self._lock:
            self.calls.append(("insert", table))
            stored = self.tables.setdefault(table, [])
            for row in rows:
                record = dict(row)
                self._assign_id(table, record)
                record.setdefault("created_at", _utc_now_iso())
                stored.append(record)
                created.append(dict(record))
        for record in created:
            self._publish(ChangeEvent(INSERT, table, new=dict(record)))
        return created

    async def upsert(self, table: str, row: dict, on_conflict: str) -> list[dict]:
        with self._lock:
            self.calls.append(("upsert", table))
            stored = self.tables.setdefault(table, [])
            for existing in stored:
                if existing.get(on_conflict) == row.get(on_conflict):
                    existing.update(row)
                    return [dict(existing)]
        return await self.insert(table, [row])

    async def select(
        self, table: str, order_by: Optional[str] = None, descending: bool = False
    ) -> list[dict]:
        with self._lock:
            self.calls.append(("select", table))
            rows = [dict(row) for row in self.tables.get(table, [])]
        if order_by:
            rows.sort(
                key=lambda row: (str(row.get(order_by) or ""), row.get("id") or 0),
                reverse=descending,
            )
        return rows

    async def delete(self, table: str, column: str, value: Any) -> list[dict]:
        with self._lock:
            self.calls.append(("delete", table))
            stored = self.tables.get(table, [])
            removed = [row for row in stored if row.get(column) == value]
            self.tables[table] = [row for row in stored if row.get(column) != value]
        for record in removed:
            self._publish(ChangeEvent(DELETE, table, old=dict(record)))
        return removed

    # Realtime

    async def subscribe(
        self, table: str, events: Iterable[str], callback: ChangeCallback
    ) -> Subscription:
        wanted = _check_events(events)
        with self._lock:
            self.calls.append(("subscribe", table))
            listener_id = next(self._listener_ids)
            self._listeners[listener_id] = (table, wanted, callback)

        async def release() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return Subscription(table, release)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [
                callback
                for table, wanted, callback in self._listeners.values()
                if table == event.table and event.event_type in wanted
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Change listener failed for %s", event.table)

    async def close(self) -> None:
        with self._lock:
            self._listeners.clear()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.tables.clear()
            self.accounts.clear()
            self.sessions.clear()
            self.auth_codes.clear()
            self.calls.clear()
            self._last_ids.clear()
            self._listeners.clear()


def _error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or exc.__class__.__name__


def parse_change_payload(payload: dict, table: str) -> ChangeEvent:
    """Normalise a realtime ``postgres_changes`` payload into a ChangeEvent."""
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    event_type = data.get("type") or data.get("eventType") or ""
    event_type = getattr(event_type, "value", event_type)
    return ChangeEvent(
        event_type=str(event_type).upper(),
        table=data.get("table") or table,
        new=dict(data.get("record") or data.get("new") or {}),
        old=dict(data.get("old_record") or data.get("old") or {}),
    )


class SupabasePlatformClient:
    """
    Adapter over the async ``supabase`` client. The SDK client is created on
    first use so constructing the adapter never touches the network.
    """

    def __init__(self, url: str, key: str, schema: str = "public"):
        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_ANON_KEY are required for SupabasePlatformClient"
            )
        self.url = url
        self.key = key
        self.schema = schema
        self._client = None

    async def _get_client(self):
        if self._client is None:
            from supabase import acreate_client

            self._client = await acreate_client(self.url, self.key)
        return self._client

    async def _execute(self, query) -> list[dict]:
        try:
            response = await query.execute()
        except Exception as exc:
            raise PlatformError(_error_message(exc)) from exc
        return list(response.data or [])

    async def exchange_code_for_session(self, code: str) -> AuthSession:
        client = await self._get_client()
        try:
            response = await client.auth.exchange_code_for_session({"auth_code": code})
        except Exception as exc:
            raise PlatformError(_error_message(exc)) from exc
        if response.session is None:
            raise PlatformError("No session returned for authorization code")
        session = response.session
        return AuthSession(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            user=AuthUser(id=str(session.user.id), email=session.user.email or ""),
        )

    async def get_session(self, access_token: Optional[str]) -> Optional[AuthSession]:
        if not access_token:
            return None
        client = await self._get_client()
        try:
            response = await client.auth.get_user(access_token)
        except Exception as exc:
            # An expired or forged token means "no session", not a failure.
            logger.info("Session lookup rejected: %s", _error_message(exc))
            return None
        if not response or not response.user:
            return None
        return AuthSession(
            access_token=access_token,
            user=AuthUser(id=str(response.user.id), email=response.user.email or ""),
        )

    async def sign_up(self, email: str, password: str) -> AuthUser:
        client = await self._get_client()
        try:
            response = await client.auth.sign_up({"email": email, "password": password})
        except Exception as exc:
            raise PlatformError(_error_message(exc)) from exc
        if response.user is None:
            raise PlatformError("Sign-up returned no user")
        return AuthUser(id=str(response.user.id), email=response.user.email or email)

    async def insert(self, table: str, rows: list[dict]) -> list[dict]:
        client = await self._get_client()
        return await self._execute(client.table(table).insert(rows))

    async def upsert(self, table: str, row: dict, on_conflict: str) -> list[dict]:
        client = await self._get_client()
        return await self._execute(
            client.table(table).upsert(row, on_conflict=on_conflict)
        )

    async def select(
        self, table: str, order_by: Optional[str] = None, descending: bool = False
    ) -> list[dict]:
        client = await self._get_client()
        query = client.table(table).select("*")
        if order_by:
            query = query.order(order_by, desc=descending)
        return await self._execute(query)

    async def delete(self, table: str, column: str, value: Any) -> list[dict]:
        client = await self._get_client()
        return await self._execute(client.table(table).delete().eq(column, value))

    async def subscribe(
        self, table: str, events: Iterable[str], callback: ChangeCallback
    ) -> Subscription:
        wanted = _check_events(events)
        client = await self._get_client()
        channel = client.channel(f"{table}:{uuid.uuid4().hex[:8]}")

        def on_change(payload: dict) -> None:
            callback(parse_change_payload(payload, table))

        for event_type in sorted(wanted):
            channel.on_postgres_changes(
                event_type, callback=on_change, table=table, schema=self.schema
            )
        try:
            await channel.subscribe()
        except Exception as exc:
            raise PlatformError(_error_message(exc)) from exc

        async def release() -> None:
            await client.remove_channel(channel)

        return Subscription(table, release)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.remove_all_channels()
            self._client = None
