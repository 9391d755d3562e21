"""
SQLAlchemy storage adapter tests for Flask-Passkey-Ceremony.
"""

import pytest
from unittest.mock import patch
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import OperationalError

from flask_passkey_ceremony import PasskeyCeremony
from flask_passkey_ceremony.errors import CeremonyError, ErrorKind
from flask_passkey_ceremony.storage import SQLAlchemyStorageAdapter


@pytest.fixture
def db_app(engine):
    """Flask app with SQLAlchemy database."""
    app = Flask(__name__)
    app.config['SECRET_KEY'] = 'test-secret'
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['TESTING'] = True

    # Passkey config
    app.config['PASSKEY_RP_ID'] = 'localhost'
    app.config['PASSKEY_RP_NAME'] = 'Test App'
    app.config['PASSKEY_ORIGIN'] = 'http://localhost:5000'

    db = SQLAlchemy(app)

    with app.app_context():
        # Initialize the extension with the SQLAlchemy adapter
        storage = SQLAlchemyStorageAdapter(session=db.session)
        PasskeyCeremony(app, storage_adapter=storage, engine=engine)

        app.db = db

    yield app

    # Cleanup
    with app.app_context():
        storage.users_table.drop(db.engine, checkfirst=True)


@pytest.fixture
def db_client(db_app):
    return db_app.test_client()


@pytest.fixture
def db_user(db_app):
    """Create an identity in the database."""
    with db_app.app_context():
        storage = db_app.extensions['passkey_ceremony'].storage
        return storage.create_identity('alice')


def _save(storage, username='alice', **overrides):
    values = dict(
        user_handle='handle-alice',
        display_name='Alice',
        credential_id='Y3JlZC0x',
        public_key='cHVibGljLWtleQ',
        sign_count=0,
        backup_eligible=False,
    )
    values.update(overrides)
    return storage.save_credential(username, **values)


@pytest.mark.unit
class TestSQLAlchemyIdentityOperations:

    def test_get_identity(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            row = storage.get_identity('alice')

            assert row is not None
            assert row['id'] == db_user['id']
            assert row['username'] == 'alice'
            assert row['webauthn_credential_id'] is None
            assert row['webauthn_sign_count'] == 0

    def test_get_identity_not_found(self, db_app):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            assert storage.get_identity('nobody') is None

    def test_create_identity_is_idempotent(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            again = storage.create_identity('alice')

            assert again['id'] == db_user['id']

    def test_created_at_is_serialized(self, db_app, db_user):
        assert isinstance(db_user['created_at'], str)


@pytest.mark.unit
class TestSQLAlchemyCredentialOperations:

    def test_save_credential(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            rows = _save(storage, sign_count=3, backup_eligible=True)

            row = storage.get_identity('alice')
            assert rows == 1
            assert row['webauthn_user_id'] == 'handle-alice'
            assert row['webauthn_displayname'] == 'Alice'
            assert row['webauthn_credential_id'] == 'Y3JlZC0x'
            assert row['webauthn_credential_public_key'] == 'cHVibGljLWtleQ'
            assert row['webauthn_sign_count'] == 3
            assert row['webauthn_backup_eligible'] is True

    def test_save_credential_replaces_previous(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            _save(storage)
            _save(storage, credential_id='Y3JlZC0y', sign_count=1)

            row = storage.get_identity('alice')
            assert row['webauthn_credential_id'] == 'Y3JlZC0y'
            assert row['webauthn_sign_count'] == 1

    def test_save_credential_unknown_user_touches_nothing(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            assert _save(storage, username='nobody') == 0
            assert storage.get_identity('nobody') is None

    def test_update_sign_count(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage
            _save(storage)

            assert storage.update_sign_count('alice', 2 ** 32 - 1) == 1
            assert storage.get_identity('alice')['webauthn_sign_count'] == 2 ** 32 - 1

    def test_update_sign_count_unknown_user(self, db_app):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            assert storage.update_sign_count('nobody', 1) == 0


@pytest.mark.unit
class TestSQLAlchemyFailures:

    def test_query_failure_is_typed(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            session = storage.session()
            error = OperationalError('SELECT', {}, Exception('disk I/O error'))

            with patch.object(session, 'execute', side_effect=error):
                with pytest.raises(CeremonyError) as exc:
                    storage.get_identity('alice')

            assert exc.value.kind is ErrorKind.STORE_FAILURE
            assert exc.value.code == 'DATABASE_QUERY_ERROR'
            assert 'disk' not in exc.value.message

    def test_update_failure_rolls_back(self, db_app, db_user):
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            session = storage.session()
            error = OperationalError('UPDATE', {}, Exception('database is locked'))

            with patch.object(session, 'execute', side_effect=error), \
                    patch.object(session, 'rollback') as mock_rollback:
                with pytest.raises(CeremonyError) as exc:
                    storage.update_sign_count('alice', 1)

            assert exc.value.code == 'DATABASE_UPDATE_ERROR'
            mock_rollback.assert_called_once()


@pytest.mark.integration
class TestSQLAlchemyEndToEnd:

    def test_registration_then_login_with_db(self, db_client, db_user, client_response):
        response = db_client.post('/webauthn/register/options', json={'username': 'alice'})
        assert response.status_code == 200
        options = response.get_json()

        response = db_client.post('/webauthn/register/verification', json={
            'username': 'alice',
            'displayname': 'Alice',
            'credential': client_response(options),
        })
        assert response.status_code == 200

        response = db_client.post('/webauthn/authenticate/options', json={'username': 'alice'})
        assert response.status_code == 200
        options = response.get_json()

        response = db_client.post('/webauthn/authenticate/verification', json={
            'username': 'alice',
            'credential': client_response(options, sign_count=1),
        })
        assert response.status_code == 200

        with db_client.application.app_context():
            storage = db_client.application.extensions['passkey_ceremony'].storage
            assert storage.get_identity('alice')['webauthn_sign_count'] == 1


@pytest.mark.security
class TestSQLAlchemySecurity:

    def test_sql_injection_prevention_username(self, db_app, db_user):
        """Username lookups are parameterized."""
        with db_app.app_context():
            storage = db_app.extensions['passkey_ceremony'].storage

            assert storage.get_identity("alice' OR '1'='1") is None
            assert _save(storage, username="x' OR '1'='1") == 0
            assert storage.get_identity('alice')['webauthn_credential_id'] is None
