"""
tether Protocol Definitions
===========================

The interface contracts between the sync core and its collaborators.

Components and their roles:
- LocalStore:       flat string-keyed JSON store on the device.
- RemoteStore:      the single authoritative row store for an owner.
- IdentityProvider: who is signed in, and how to refresh their session.
- Subscription:     handle for a realtime push subscription.

Error handling philosophy:
- Network failures and timeouts are transient: raise RemoteUnavailableError /
  RemoteTimeoutError, the caller retries on the next connectivity event.
- An expired session raises AuthExpiredError; the engine refreshes once and
  raises ReauthRequiredError if that does not help.
- Local write failures for lack of space raise StorageQuotaError.
- Unparseable local JSON raises DataCorruptionError; the repository resets the
  affected collection rather than propagating bad data.
- InvariantViolation marks a resolver bug and is never caught.
"""

from __future__ import annotations

from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from tether.types import RemoteChange, RemoteRow

# =============================================================================
# ERRORS
# =============================================================================


class TetherError(Exception):
    """Base for all tether errors."""

    pass


class RemoteError(TetherError):
    """Base for failures talking to the remote store."""

    retryable = False


class RemoteUnavailableError(RemoteError):
    """Network failure. Transient: retried on the next connectivity event."""

    retryable = True


class RemoteTimeoutError(RemoteUnavailableError):
    """A remote call exceeded its timeout. The wire call may still complete."""

    pass


class AuthExpiredError(RemoteError):
    """The session token was rejected. One refresh is attempted."""

    pass


class ReauthRequiredError(RemoteError):
    """Refreshing the session did not help. Sync halts until sign-in."""

    pass


class StorageError(TetherError):
    """Raised by LocalStore implementations on storage failures."""

    pass


class StorageQuotaError(StorageError):
    """A local write failed because the store is full."""

    pass


class DataCorruptionError(StorageError):
    """Local JSON could not be parsed or has the wrong shape."""

    def __init__(self, key: str, reason: str = "unparseable"):
        super().__init__(f"Corrupt local data under {key!r}: {reason}")
        self.key = key
        self.reason = reason


class InvariantViolation(TetherError):
    """A reconciliation invariant does not hold. Indicates a resolver bug."""

    pass


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class LocalStore(Protocol):
    """Flat string-keyed JSON store.

    Values are JSON-serializable. `get` returns None for absent keys and
    raises DataCorruptionError when the stored value cannot be decoded.
    `set_many` writes and deletes several keys all-or-nothing.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def set_many(self, values: Dict[str, Any], delete_keys: Iterable[str] = ()) -> None: ...

    def delete(self, key: str) -> None: ...

    def list_keys_with_prefix(self, prefix: str) -> List[str]: ...


@runtime_checkable
class Subscription(Protocol):
    """Handle for an active realtime subscription."""

    async def unsubscribe(self) -> None: ...


ChangeCallback = Callable[[RemoteChange], Any]


@runtime_checkable
class RemoteStore(Protocol):
    """Authoritative row store: one table per collection, rows per owner.

    Writes are upserts keyed on `(owner, name)` / `(owner, date)` / `owner`
    and return the stored row with its server timestamp. Deleting an absent
    row is not an error.
    """

    async def fetch_records(self, owner_id: str) -> List[RemoteRow]: ...

    async def fetch_logs(self, owner_id: str, since: Optional[int] = None) -> List[RemoteRow]: ...

    async def fetch_settings(self, owner_id: str) -> Optional[RemoteRow]: ...

    async def upsert_record(self, owner_id: str, name: str, payload: Dict[str, Any]) -> RemoteRow: ...

    async def upsert_log(self, owner_id: str, date: str, entries: Dict[str, Any]) -> RemoteRow: ...

    async def upsert_settings(self, owner_id: str, payload: Dict[str, Any]) -> RemoteRow: ...

    async def delete_record(self, owner_id: str, name: str) -> None: ...

    async def subscribe(self, owner_id: str, callback: ChangeCallback) -> Subscription: ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Signed-in identity. Login/logout events reach the engine directly."""

    def current_owner_id(self) -> Optional[str]: ...

    async def refresh_session(self) -> bool: ...


PromptCallback = Callable[[str, str], Any]
StatusCallback = Callable[[Any], Any]
