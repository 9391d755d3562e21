"""
Flask-Passkey-Ceremony Storage Adapters
=======================================
Durable per-user credential records, keyed by username.

Rows are plain dicts using the column names of the users table:
id, username, webauthn_user_id, webauthn_displayname, webauthn_credential_id,
webauthn_credential_public_key, webauthn_sign_count, webauthn_backup_eligible
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from . import errors


class StorageAdapter(ABC):
    """Base credential store interface"""

    @abstractmethod
    def get_identity(self, username):
        """Retrieve a user row by username, or None"""
        pass

    @abstractmethod
    def create_identity(self, username):
        """Get existing user row or create a new one without credentials"""
        pass

    @abstractmethod
    def save_credential(self, username, *, user_handle, display_name, credential_id,
                        public_key, sign_count, backup_eligible):
        """Persist a newly registered credential in one write. Returns rows affected."""
        pass

    @abstractmethod
    def update_sign_count(self, username, sign_count):
        """Persist the latest authenticator sign count. Returns rows affected."""
        pass


def _empty_row(user_id, username):
    return {
        'id': user_id,
        'username': username,
        'webauthn_user_id': None,
        'webauthn_displayname': None,
        'webauthn_credential_id': None,
        'webauthn_credential_public_key': None,
        'webauthn_sign_count': 0,
        'webauthn_backup_eligible': False,
        'created_at': datetime.now(timezone.utc).isoformat(),
    }


class InMemoryStorageAdapter(StorageAdapter):
    """
    In-memory storage for development only.
    DO NOT USE IN PRODUCTION - data lost on restart.
    """

    def __init__(self):
        self.users = {}

    def get_identity(self, username):
        user = self.users.get(username)
        return dict(user) if user else None

    def create_identity(self, username):
        if username not in self.users:
            self.users[username] = _empty_row(len(self.users) + 1, username)
        return dict(self.users[username])

    def save_credential(self, username, *, user_handle, display_name, credential_id,
                        public_key, sign_count, backup_eligible):
        user = self.users.get(username)
        if user is None:
            return 0

        # Replace the row in one step so readers never see half a credential
        self.users[username] = dict(
            user,
            webauthn_user_id=user_handle,
            webauthn_displayname=display_name,
            webauthn_credential_id=credential_id,
            webauthn_credential_public_key=public_key,
            webauthn_sign_count=sign_count,
            webauthn_backup_eligible=bool(backup_eligible),
        )
        return 1

    def update_sign_count(self, username, sign_count):
        user = self.users.get(username)
        if user is None:
            return 0
        self.users[username] = dict(user, webauthn_sign_count=sign_count)
        return 1


class SQLAlchemyStorageAdapter(StorageAdapter):
    """
    SQLAlchemy-based credential store.

    Features:
    - Single-statement credential and sign count writes
    - Rollback on failure; driver errors never reach the client
    """

    def __init__(self, session, table_name='users'):
        self.session = session
        self.table_name = table_name

        self._ensure_users_table()

    def _ensure_users_table(self):
        """Create the users table if it doesn't exist"""
        from sqlalchemy import (
            BigInteger, Boolean, Column, DateTime, Integer, MetaData, String, Table, Text,
        )

        metadata = MetaData()
        self.users_table = Table(
            self.table_name,
            metadata,
            Column('id', Integer, primary_key=True),
            Column('username', String(255), unique=True, nullable=False, index=True),
            Column('webauthn_user_id', String(255)),
            Column('webauthn_displayname', String(255)),
            Column('webauthn_credential_id', String(1024)),
            Column('webauthn_credential_public_key', Text),
            Column('webauthn_sign_count', BigInteger, default=0, nullable=False),
            Column('webauthn_backup_eligible', Boolean, default=False, nullable=False),
            Column('created_at', DateTime, nullable=False),
            extend_existing=True
        )

        metadata.create_all(self.session.get_bind(), checkfirst=True)

    def _row_to_dict(self, row):
        data = dict(row._mapping)
        if isinstance(data.get('created_at'), datetime):
            data['created_at'] = data['created_at'].isoformat()
        return data

    def get_identity(self, username):
        try:
            row = self.session.execute(
                self.users_table.select().where(self.users_table.c.username == username)
            ).fetchone()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise errors.store_error("DATABASE_QUERY_ERROR", "Database error", e) from e

        return self._row_to_dict(row) if row else None

    def create_identity(self, username):
        existing = self.get_identity(username)
        if existing:
            return existing

        try:
            self.session.execute(
                self.users_table.insert().values(
                    username=username,
                    webauthn_sign_count=0,
                    webauthn_backup_eligible=False,
                    created_at=datetime.now(timezone.utc),
                )
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise errors.store_error("DATABASE_UPDATE_ERROR", "Database error", e) from e

        return self.get_identity(username)

    def _update(self, username, **values):
        try:
            result = self.session.execute(
                self.users_table.update().where(
                    self.users_table.c.username == username
                ).values(**values)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise errors.store_error("DATABASE_UPDATE_ERROR", "Database error", e) from e

        return result.rowcount

    def save_credential(self, username, *, user_handle, display_name, credential_id,
                        public_key, sign_count, backup_eligible):
        return self._update(
            username,
            webauthn_user_id=user_handle,
            webauthn_displayname=display_name,
            webauthn_credential_id=credential_id,
            webauthn_credential_public_key=public_key,
            webauthn_sign_count=sign_count,
            webauthn_backup_eligible=bool(backup_eligible),
        )

    def update_sign_count(self, username, sign_count):
        return self._update(username, webauthn_sign_count=sign_count)
