"""
Persistence of OAuth token records and the ad accounts reachable with them.

Records are keyed by ``(user_id, platform)`` where ``platform`` is the
storage key of a platform (Instagram and Meta store under ``facebook``).
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..utils.helpers import as_utc, utcnow
from ..utils.logger import logger
from .database import ConnectedAdAccount, PlatformToken, create_session_factory
from .encryption import TokenEncryption


@dataclass(frozen=True)
class TokenRecord:
    """Stored token for one user on one platform."""

    user_id: str
    platform: str
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    needs_reauth: bool = False
    last_refreshed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)


@dataclass(frozen=True)
class AdAccount:
    """Ad account (or Instagram business account / Google Ads customer)."""

    account_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    kind: str = "ad_account"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "status": self.status,
            "currency": self.currency,
            "kind": self.kind,
        }


class TokenStore(ABC):
    """Interface every token store implements. All methods are coroutines."""

    @abstractmethod
    async def find_by_user_and_platform(self, user_id: str, platform: str) -> Optional[TokenRecord]:
        """Point lookup; None when the user never connected the platform."""

    @abstractmethod
    async def upsert(self, record: TokenRecord) -> TokenRecord:
        """
        Insert or replace the record for ``(record.user_id, record.platform)``.

        An existing record keeps its ``id`` and ``created_at``; everything else
        is overwritten (last write wins).
        """

    @abstractmethod
    async def update_token(self, record: TokenRecord) -> bool:
        """
        Overwrite an existing record in place; never inserts.

        Returns False when the record was deleted, or deleted and connected
        again (a different ``id``), since it was read.
        """

    @abstractmethod
    async def mark_needs_reauth(self, user_id: str, platform: str) -> bool:
        """Flag a record as needing a new consent flow. Returns False if absent."""

    @abstractmethod
    async def delete_by_user_and_platform(self, user_id: str, platform: str) -> bool:
        """Remove one record and its ad accounts. Returns False if absent."""

    @abstractmethod
    async def delete_by_user(self, user_id: str) -> int:
        """Remove every record of a user. Returns the number removed."""

    @abstractmethod
    async def list_users_with_tokens_expiring_before(self, cutoff: datetime) -> List[str]:
        """
        Users owning at least one unflagged record that expires before ``cutoff``
        (records without an expiry count as expired).
        """

    @abstractmethod
    async def replace_ad_accounts(self, user_id: str, platform: str, accounts: Iterable[AdAccount]) -> None:
        """Replace the ad accounts attached to a record wholesale."""

    @abstractmethod
    async def list_ad_accounts(self, user_id: str, platform: str) -> List[AdAccount]:
        """Ad accounts attached to a record (empty when there is no record)."""


def _is_expiring_before(record: TokenRecord, cutoff: datetime) -> bool:
    return record.expires_at is None or as_utc(record.expires_at) < cutoff


class InMemoryTokenStore(TokenStore):
    """
    Dict-backed store for tests and single-process deployments.

    Records are immutable and swapped whole, so a reader never sees a
    half-written token.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str], TokenRecord] = {}
        self._accounts: Dict[Tuple[str, str], List[AdAccount]] = {}

    async def find_by_user_and_platform(self, user_id: str, platform: str) -> Optional[TokenRecord]:
        return self._records.get((str(user_id), platform))

    async def upsert(self, record: TokenRecord) -> TokenRecord:
        key = (str(record.user_id), record.platform)
        existing = self._records.get(key)
        if existing:
            record = replace(record, id=existing.id, created_at=existing.created_at, updated_at=utcnow())
        self._records[key] = record
        return record

    async def update_token(self, record: TokenRecord) -> bool:
        key = (str(record.user_id), record.platform)
        existing = self._records.get(key)
        if existing is None or existing.id != record.id:
            return False
        self._records[key] = replace(record, created_at=existing.created_at, updated_at=utcnow())
        return True

    async def mark_needs_reauth(self, user_id: str, platform: str) -> bool:
        key = (str(user_id), platform)
        existing = self._records.get(key)
        if existing is None:
            return False
        self._records[key] = replace(existing, needs_reauth=True, updated_at=utcnow())
        return True

    async def delete_by_user_and_platform(self, user_id: str, platform: str) -> bool:
        key = (str(user_id), platform)
        self._accounts.pop(key, None)
        return self._records.pop(key, None) is not None

    async def delete_by_user(self, user_id: str) -> int:
        keys = [key for key in self._records if key[0] == str(user_id)]
        for key in keys:
            self._records.pop(key, None)
            self._accounts.pop(key, None)
        return len(keys)

    async def list_users_with_tokens_expiring_before(self, cutoff: datetime) -> List[str]:
        cutoff = as_utc(cutoff)
        users = {
            record.user_id
            for record in self._records.values()
            if not record.needs_reauth and _is_expiring_before(record, cutoff)
        }
        return sorted(users)

    async def replace_ad_accounts(self, user_id: str, platform: str, accounts: Iterable[AdAccount]) -> None:
        key = (str(user_id), platform)
        if key not in self._records:
            logger.warning(f"Not storing ad accounts for {platform}: user {user_id} has no token")
            return
        self._accounts[key] = list(accounts)

    async def list_ad_accounts(self, user_id: str, platform: str) -> List[AdAccount]:
        return list(self._accounts.get((str(user_id), platform), []))


class SQLAlchemyTokenStore(TokenStore):
    """
    SQL-backed store with Fernet-encrypted token columns.

    Each write is one transaction on a short-lived session. The synchronous
    SQLAlchemy work runs in a worker thread so the event loop never blocks.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        encryption: Optional[TokenEncryption] = None,
    ):
        self._session_factory = session_factory or create_session_factory()
        self.encryption = encryption or TokenEncryption()

    def _to_record(self, row: PlatformToken) -> TokenRecord:
        return TokenRecord(
            id=row.id,
            user_id=row.user_id,
            platform=row.platform,
            access_token=self.encryption.decrypt(row.encrypted_access_token),
            refresh_token=(
                self.encryption.decrypt(row.encrypted_refresh_token) if row.encrypted_refresh_token else None
            ),
            expires_at=as_utc(row.expires_at) if row.expires_at else None,
            token_type=row.token_type or "Bearer",
            scope=row.scope,
            needs_reauth=bool(row.needs_reauth),
            last_refreshed_at=as_utc(row.last_refreshed) if row.last_refreshed else None,
            created_at=as_utc(row.created_at) if row.created_at else utcnow(),
            updated_at=as_utc(row.updated_at) if row.updated_at else utcnow(),
        )

    def _apply(self, row: PlatformToken, record: TokenRecord) -> None:
        row.encrypted_access_token = self.encryption.encrypt(record.access_token)
        row.encrypted_refresh_token = (
            self.encryption.encrypt(record.refresh_token) if record.refresh_token else None
        )
        row.expires_at = as_utc(record.expires_at) if record.expires_at else None
        row.token_type = record.token_type
        row.scope = record.scope
        row.needs_reauth = record.needs_reauth
        row.last_refreshed = as_utc(record.last_refreshed_at) if record.last_refreshed_at else None
        row.updated_at = utcnow()

    @staticmethod
    def _query_one(db, user_id: str, platform: str) -> Optional[PlatformToken]:
        return db.query(PlatformToken).filter(
            PlatformToken.user_id == str(user_id),
            PlatformToken.platform == platform,
        ).first()

    def _find_sync(self, user_id: str, platform: str) -> Optional[TokenRecord]:
        db = self._session_factory()
        try:
            row = self._query_one(db, user_id, platform)
            return self._to_record(row) if row else None
        finally:
            db.close()

    def _upsert_sync(self, record: TokenRecord) -> TokenRecord:
        db = self._session_factory()
        try:
            existing = self._query_one(db, record.user_id, record.platform)
            if existing:
                self._apply(existing, record)
                db.commit()
                logger.info(f"Updated {record.platform} token for user: {record.user_id}")
                return self._to_record(existing)

            row = PlatformToken(
                id=record.id,
                user_id=str(record.user_id),
                platform=record.platform,
                created_at=as_utc(record.created_at),
            )
            self._apply(row, record)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent writer inserted the same (user, platform) first
                db.rollback()
                existing = self._query_one(db, record.user_id, record.platform)
                if existing is None:
                    raise
                self._apply(existing, record)
                db.commit()
                logger.info(f"Updated {record.platform} token for user: {record.user_id} after insert race")
                return self._to_record(existing)

            logger.info(f"Saved new {record.platform} token for user: {record.user_id}")
            return self._to_record(row)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to save {record.platform} token for user {record.user_id}: {e}")
            raise
        finally:
            db.close()

    def _update_token_sync(self, record: TokenRecord) -> bool:
        db = self._session_factory()
        try:
            row = self._query_one(db, record.user_id, record.platform)
            if row is None or row.id != record.id:
                return False
            self._apply(row, record)
            db.commit()
            logger.info(f"Updated {record.platform} token for user: {record.user_id}")
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to update {record.platform} token for user {record.user_id}: {e}")
            raise
        finally:
            db.close()

    def _mark_needs_reauth_sync(self, user_id: str, platform: str) -> bool:
        db = self._session_factory()
        try:
            row = self._query_one(db, user_id, platform)
            if row is None:
                return False
            row.needs_reauth = True
            row.updated_at = utcnow()
            db.commit()
            return True
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to flag {platform} token for user {user_id}: {e}")
            raise
        finally:
            db.close()

    def _delete_sync(self, user_id: str, platform: Optional[str] = None) -> int:
        db = self._session_factory()
        try:
            query = db.query(PlatformToken).filter(PlatformToken.user_id == str(user_id))
            if platform is not None:
                query = query.filter(PlatformToken.platform == platform)
            rows = query.all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to delete tokens for user {user_id}: {e}")
            raise
        finally:
            db.close()

    def _expiring_users_sync(self, cutoff: datetime) -> List[str]:
        db = self._session_factory()
        try:
            rows = db.query(PlatformToken.user_id).filter(
                PlatformToken.needs_reauth == False,  # noqa: E712
                or_(PlatformToken.expires_at.is_(None), PlatformToken.expires_at < cutoff),
            ).distinct().all()
            return sorted(row[0] for row in rows)
        finally:
            db.close()

    def _replace_accounts_sync(self, user_id: str, platform: str, accounts: List[AdAccount]) -> None:
        db = self._session_factory()
        try:
            row = self._query_one(db, user_id, platform)
            if row is None:
                logger.warning(f"Not storing ad accounts for {platform}: user {user_id} has no token")
                return
            row.ad_accounts = [
                ConnectedAdAccount(
                    account_id=account.account_id,
                    name=account.name,
                    status=account.status,
                    currency=account.currency,
                    kind=account.kind,
                )
                for account in accounts
            ]
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to store ad accounts for user {user_id}: {e}")
            raise
        finally:
            db.close()

    def _list_accounts_sync(self, user_id: str, platform: str) -> List[AdAccount]:
        db = self._session_factory()
        try:
            row = self._query_one(db, user_id, platform)
            if row is None:
                return []
            return [
                AdAccount(
                    account_id=account.account_id,
                    name=account.name,
                    status=account.status,
                    currency=account.currency,
                    kind=account.kind,
                )
                for account in row.ad_accounts
            ]
        finally:
            db.close()

    async def find_by_user_and_platform(self, user_id: str, platform: str) -> Optional[TokenRecord]:
        return await asyncio.to_thread(self._find_sync, user_id, platform)

    async def upsert(self, record: TokenRecord) -> TokenRecord:
        return await asyncio.to_thread(self._upsert_sync, record)

    async def update_token(self, record: TokenRecord) -> bool:
        return await asyncio.to_thread(self._update_token_sync, record)

    async def mark_needs_reauth(self, user_id: str, platform: str) -> bool:
        return await asyncio.to_thread(self._mark_needs_reauth_sync, user_id, platform)

    async def delete_by_user_and_platform(self, user_id: str, platform: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, user_id, platform) > 0

    async def delete_by_user(self, user_id: str) -> int:
        return await asyncio.to_thread(self._delete_sync, user_id)

    async def list_users_with_tokens_expiring_before(self, cutoff: datetime) -> List[str]:
        return await asyncio.to_thread(self._expiring_users_sync, as_utc(cutoff))

    async def replace_ad_accounts(self, user_id: str, platform: str, accounts: Iterable[AdAccount]) -> None:
        await asyncio.to_thread(self._replace_accounts_sync, user_id, platform, list(accounts))

    async def list_ad_accounts(self, user_id: str, platform: str) -> List[AdAccount]:
        return await asyncio.to_thread(self._list_accounts_sync, user_id, platform)
