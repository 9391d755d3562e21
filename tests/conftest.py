"""
Pytest fixtures for Flask-Passkey-Ceremony tests.

Pytest automatically discovers this file (conftest.py) and uses it to provide
fixtures to tests under this directory tree.
"""

import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest
from flask import Flask

# Ensure project root is importable when running tests from /tests
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flask_passkey_ceremony import errors
from flask_passkey_ceremony.auth import PasskeyCeremony
from flask_passkey_ceremony.ceremony import CeremonyOrchestrator
from flask_passkey_ceremony.models import CeremonySession, Credential
from flask_passkey_ceremony.session_cache import InMemorySessionCache
from flask_passkey_ceremony.storage import InMemoryStorageAdapter
from flask_passkey_ceremony.utils import b64url_decode, b64url_encode


class FakeProtocolEngine:
    """
    Deterministic stand-in for ProtocolEngine.

    A client response verifies when it echoes the session challenge, names a
    credential the user holds (login) and its signature is not "tampered".
    """

    def __init__(self):
        self.calls = []
        self._issued = 0

    def _next_challenge(self):
        self._issued += 1
        return b64url_encode(f"challenge-{self._issued}".encode())

    def _check(self, session, credential, code):
        if credential.get('challenge') != session.challenge:
            raise errors.verification_error(code, "Verification failed")
        if credential.get('signature') == 'tampered':
            raise errors.verification_error(code, "Verification failed")

    def begin_registration(self, user, exclude_credentials=()):
        self.calls.append(('begin_registration', user))
        session = CeremonySession(
            challenge=self._next_challenge(),
            user_handle=b64url_encode(user.user_handle),
        )
        options = {
            'publicKey': {
                'challenge': session.challenge,
                'rp': {'id': 'localhost', 'name': 'Test App'},
                'user': {
                    'id': session.user_handle,
                    'name': user.name,
                    'displayName': user.display_name,
                },
                'excludeCredentials': [
                    {'id': b64url_encode(c.credential_id), 'type': 'public-key'}
                    for c in exclude_credentials
                ],
            }
        }
        return options, session

    def finish_registration(self, user, session, credential):
        self.calls.append(('finish_registration', user))
        self._check(session, credential, 'WEBAUTHN_FINISH_REGISTRATION_ERROR')
        if b64url_encode(user.user_handle) != session.user_handle:
            raise errors.verification_error('WEBAUTHN_FINISH_REGISTRATION_ERROR', "Verification failed")

        credential_id = b64url_decode(credential['id'])
        return Credential(
            credential_id=credential_id,
            public_key=b'public-key:' + credential_id,
            sign_count=credential.get('signCount', 0),
            backup_eligible=credential.get('backupEligible', False),
        )

    def begin_login(self, user):
        self.calls.append(('begin_login', user))
        session = CeremonySession(
            challenge=self._next_challenge(),
            user_handle=b64url_encode(user.user_handle),
            allowed_credential_ids=[b64url_encode(c.credential_id) for c in user.credentials],
        )
        options = {
            'publicKey': {
                'challenge': session.challenge,
                'rpId': 'localhost',
                'allowCredentials': [
                    {'id': cid, 'type': 'public-key'} for cid in session.allowed_credential_ids
                ],
            }
        }
        return options, session

    def finish_login(self, user, session, credential):
        self.calls.append(('finish_login', user))
        self._check(session, credential, 'WEBAUTHN_FINISH_LOGIN_ERROR')

        stored = user.find_credential(b64url_decode(credential['id']))
        if stored is None:
            raise errors.verification_error('WEBAUTHN_FINISH_LOGIN_ERROR', "Verification failed")
        return Credential(
            credential_id=stored.credential_id,
            public_key=stored.public_key,
            sign_count=credential.get('signCount', 0),
            backup_eligible=stored.backup_eligible,
        )


@pytest.fixture
def base_config():
    # Keep config minimal and explicit for test determinism
    return {
        "SECRET_KEY": "test-secret-key",
        "TESTING": True,

        # Relying party
        "PASSKEY_RP_ID": "localhost",
        "PASSKEY_RP_NAME": "Test App",
        "PASSKEY_ORIGIN": "http://localhost:5000",

        # Ceremony state
        "PASSKEY_CEREMONY_TTL": 86400,
        "PASSKEY_LOGIN_URL": "/login",
        "PASSKEY_SESSION_DURATION": 3600,    # seconds
    }


@pytest.fixture
def engine():
    return FakeProtocolEngine()


@pytest.fixture
def storage():
    return InMemoryStorageAdapter()


@pytest.fixture
def cache():
    return InMemorySessionCache()


@pytest.fixture
def orchestrator(storage, cache, engine):
    return CeremonyOrchestrator(storage, cache, engine)


@pytest.fixture
def app(base_config, storage, cache, engine):
    """Flask app with the extension, in-memory adapters and the fake engine."""
    app = Flask(__name__)
    app.config.update(base_config)

    passkey = PasskeyCeremony(app, storage_adapter=storage, session_cache=cache, engine=engine)

    # ---- Minimal host-app routes used by tests / redirects ----
    @app.route("/public")
    def public():
        return "Public content"

    @app.route("/protected")
    @passkey.login_required
    def protected():
        return "Protected content"

    @app.route("/login")
    def login_page():
        return "Login page"

    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def test_username():
    return "alice"


@pytest.fixture
def test_user(storage, test_username):
    """An identity with no enrolled credential (the host app created it)."""
    return storage.create_identity(test_username)


@pytest.fixture
def enrolled_user(storage, test_user, test_username):
    """An identity with one stored credential, as a finished registration leaves it."""
    storage.save_credential(
        test_username,
        user_handle="handle-alice",
        display_name="Alice",
        credential_id=b64url_encode(b"cred-1"),
        public_key=b64url_encode(b"public-key:cred-1"),
        sign_count=0,
        backup_eligible=False,
    )
    return storage.get_identity(test_username)


@pytest.fixture
def client_response():
    """Build what the browser would post back for a given options payload."""
    def build(options, credential_id=b"cred-1", sign_count=0, signature="ok"):
        encoded = b64url_encode(credential_id)
        return {
            'id': encoded,
            'rawId': encoded,
            'type': 'public-key',
            'challenge': options['publicKey']['challenge'],
            'signature': signature,
            'signCount': sign_count,
        }
    return build


@pytest.fixture
def authenticated_client(client, enrolled_user):
    with client.session_transaction() as sess:
        sess["username"] = enrolled_user["username"]
        sess["logged_in_at"] = datetime.now(timezone.utc).isoformat()
    return client


@pytest.fixture
def expired_session_client(client, enrolled_user):
    with client.session_transaction() as sess:
        sess["username"] = enrolled_user["username"]
        expired_time = datetime.now(timezone.utc) - timedelta(hours=2)
        sess["logged_in_at"] = expired_time.isoformat()
    return client
