from flask import Blueprint, session, redirect, url_for, request, current_app, jsonify
from datetime import datetime, timedelta, timezone
from functools import wraps
from urllib.parse import urlparse

from .ceremony import CeremonyOrchestrator
from .engine import ProtocolEngine
from .errors import CeremonyError, error_response
from .schemas import (
    BeginCeremonyRequest,
    FinishLoginRequest,
    FinishRegistrationRequest,
    parse_request,
)
from .session_cache import InMemorySessionCache, RedisSessionCache
from .storage import InMemoryStorageAdapter


class PasskeyCeremony:
    """Passkey registration and login ceremonies for Flask."""

    def __init__(self, app=None, storage_adapter=None, session_cache=None, engine=None):
        self.app = app
        self.blueprint = Blueprint('passkey', __name__)

        self.storage = storage_adapter or InMemoryStorageAdapter()
        self.session_cache = session_cache
        self.engine = engine
        self.orchestrator = None

        self._register_routes()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize the extension with Flask app."""
        # Relying party
        app.config.setdefault('PASSKEY_RP_ID', 'localhost')
        app.config.setdefault('PASSKEY_RP_NAME', 'Flask-Passkey-Ceremony')
        app.config.setdefault('PASSKEY_ORIGIN', 'http://localhost:5000')
        app.config.setdefault('PASSKEY_TIMEOUT_MS', 60000)
        app.config.setdefault('PASSKEY_USER_VERIFICATION', 'preferred')
        app.config.setdefault('PASSKEY_REQUIRE_USER_VERIFICATION', None)

        # Ceremony state
        app.config.setdefault('PASSKEY_URL_PREFIX', '/webauthn')
        app.config.setdefault('PASSKEY_CEREMONY_TTL', 86400)
        app.config.setdefault('PASSKEY_REDIS_URL', None)

        # Policies
        app.config.setdefault('PASSKEY_EXCLUDE_EXISTING_CREDENTIALS', False)
        app.config.setdefault('PASSKEY_ASSUME_BACKUP_ELIGIBLE', True)
        app.config.setdefault('PASSKEY_DELETE_SESSION_ON_FINISH', True)
        app.config.setdefault('PASSKEY_ENFORCE_SIGN_COUNT', True)

        # Host app login session
        app.config.setdefault('PASSKEY_LOGIN_URL', '/login')
        app.config.setdefault('PASSKEY_REDIRECT_URL', '/')
        app.config.setdefault('PASSKEY_SESSION_DURATION', 24 * 60 * 60)

        if self.session_cache is None:
            redis_url = app.config.get('PASSKEY_REDIS_URL')
            if redis_url:
                self.session_cache = RedisSessionCache.from_url(redis_url)
            else:
                app.logger.warning("PASSKEY_REDIS_URL not set; using in-memory ceremony sessions")
                self.session_cache = InMemorySessionCache()

        if self.engine is None:
            self.engine = ProtocolEngine(
                rp_id=app.config['PASSKEY_RP_ID'],
                rp_name=app.config['PASSKEY_RP_NAME'],
                origin=app.config['PASSKEY_ORIGIN'],
                timeout_ms=app.config['PASSKEY_TIMEOUT_MS'],
                user_verification=app.config['PASSKEY_USER_VERIFICATION'],
                require_user_verification=app.config['PASSKEY_REQUIRE_USER_VERIFICATION'],
            )

        self.orchestrator = CeremonyOrchestrator(
            self.storage,
            self.session_cache,
            self.engine,
            session_ttl=app.config['PASSKEY_CEREMONY_TTL'],
            exclude_existing_credentials=app.config['PASSKEY_EXCLUDE_EXISTING_CREDENTIALS'],
            assume_backup_eligible=app.config['PASSKEY_ASSUME_BACKUP_ELIGIBLE'],
            delete_session_on_finish=app.config['PASSKEY_DELETE_SESSION_ON_FINISH'],
            enforce_sign_count=app.config['PASSKEY_ENFORCE_SIGN_COUNT'],
            logger=app.logger,
        )

        app.extensions['passkey_ceremony'] = self
        app.register_blueprint(self.blueprint, url_prefix=app.config['PASSKEY_URL_PREFIX'])

    # ==================== Login session ====================

    def login(self, username):
        session['username'] = username
        session['logged_in_at'] = datetime.now(timezone.utc).isoformat()

    def login_required(self, f):
        """Decorator to require a passkey login for a view."""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not self.is_authenticated():
                session['next'] = request.full_path
                return redirect(url_for('passkey.login'))
            return f(*args, **kwargs)
        return decorated_function

    def is_authenticated(self):
        """Check if the current user completed a passkey login."""
        if not session.get('username'):
            return False

        logged_in_at = session.get('logged_in_at')
        if not logged_in_at:
            return False

        try:
            logged_in_dt = datetime.fromisoformat(logged_in_at)
        except (ValueError, TypeError):
            session.clear()
            return False

        session_duration = current_app.config.get('PASSKEY_SESSION_DURATION', 24 * 60 * 60)
        if datetime.now(timezone.utc) - logged_in_dt > timedelta(seconds=session_duration):
            session.clear()
            return False

        return True

    def get_current_user(self):
        """Get the identity row of the current user."""
        if not self.is_authenticated():
            return None

        return self.storage.get_identity(session.get('username'))

    # ==================== Routes ====================

    def _resolve_next_url(self, raw_value):
        """
        Resolve a stored redirect target safely.

        - Only allows internal paths like "/keys?tab=passkeys"
        - Rejects absolute URLs and scheme-relative paths
        """
        default = current_app.config.get('PASSKEY_REDIRECT_URL', '/')

        if not raw_value:
            return default

        parsed = urlparse(raw_value)
        if parsed.scheme or parsed.netloc or not parsed.path.startswith('/'):
            return default

        path = parsed.path
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return path

    def _respond(self, result, build_body):
        if not result.ok:
            body, status = error_response(result.error)
            return jsonify(body), status
        return jsonify(build_body(result.value)), 200

    def _parse(self, schema):
        data = request.get_json(silent=True)
        return parse_request(schema, data), data

    def _register_routes(self):
        """Register ceremony routes on the blueprint."""

        @self.blueprint.route('/login')
        def login():
            """
            Redirect to the application's login UI.

            The extension does not render templates; the host app owns the UI.
            """
            return redirect(current_app.config.get('PASSKEY_LOGIN_URL', '/login'))

        # ==================== Registration ====================

        @self.blueprint.route('/register/options', methods=['POST'])
        def register_options():
            try:
                body, _ = self._parse(BeginCeremonyRequest)
            except CeremonyError as e:
                current_app.logger.warning(f"Rejected registration options request: {e.code}")
                payload, status = error_response(e)
                return jsonify(payload), status

            result = self.orchestrator.begin_registration(body.username)
            return self._respond(result, lambda options: options)

        @self.blueprint.route('/register/verification', methods=['POST'])
        def register_verification():
            try:
                body, raw = self._parse(FinishRegistrationRequest)
            except CeremonyError as e:
                current_app.logger.warning(f"Rejected registration verification request: {e.code}")
                payload, status = error_response(e)
                return jsonify(payload), status

            result = self.orchestrator.finish_registration(body.username, body.displayname, body.credential)
            return self._respond(result, lambda value: {
                'credential': value['credential'],
                'payload': raw,
                'message': 'Verification successful',
                'path': request.path,
            })

        # ==================== Authentication ====================

        @self.blueprint.route('/authenticate/options', methods=['POST'])
        def authenticate_options():
            try:
                body, _ = self._parse(BeginCeremonyRequest)
            except CeremonyError as e:
                current_app.logger.warning(f"Rejected login options request: {e.code}")
                payload, status = error_response(e)
                return jsonify(payload), status

            result = self.orchestrator.begin_login(body.username)
            return self._respond(result, lambda options: options)

        @self.blueprint.route('/authenticate/verification', methods=['POST'])
        def authenticate_verification():
            try:
                body, _ = self._parse(FinishLoginRequest)
            except CeremonyError as e:
                current_app.logger.warning(f"Rejected login verification request: {e.code}")
                payload, status = error_response(e)
                return jsonify(payload), status

            result = self.orchestrator.finish_login(body.username, body.credential)
            next_url = None
            if result.ok:
                self.login(body.username)
                # The page login_required bounced the browser from, internal paths only
                next_url = self._resolve_next_url(session.pop('next', None))

            return self._respond(result, lambda user: {
                'message': 'Login verification successful',
                'user': user.to_dict(),
                'next': next_url,
            })

        @self.blueprint.route('/logout')
        def logout():
            """Log the user out by clearing the session."""
            session.clear()
            return redirect(current_app.config.get('PASSKEY_LOGIN_URL', '/login'))
