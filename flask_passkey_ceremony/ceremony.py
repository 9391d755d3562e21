"""
ceremony.py: begin/finish orchestration for passkey registration and login

Each call is one request-scoped unit of work. State that must survive between
begin and finish lives only in the session cache (challenge state) and the
credential store (the enrolled credential); the orchestrator itself holds none.

Every public method returns a CeremonyResult. CeremonyError raised by the
store, the cache or the engine becomes the failure; anything else is logged
and reported as an unexpected error. Nothing is retried.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from . import errors
from .errors import CeremonyError, CeremonyResult, ErrorKind
from .models import CeremonySession, CeremonyUser, Credential, Identity
from .session_cache import CeremonyKind, session_key
from .utils import b64url_decode, b64url_encode

DEFAULT_SESSION_TTL = 86400
MAX_SIGN_COUNT = 0xFFFFFFFF

_CLIENT_SIDE_KINDS = (
    ErrorKind.INPUT_VALIDATION,
    ErrorKind.NOT_FOUND,
    ErrorKind.PROTOCOL_VERIFICATION_FAILURE,
)


def _require_username(username) -> str:
    if not isinstance(username, str) or not username:
        raise errors.username_invalid()
    return username


def _require_display_name(display_name) -> str:
    if not isinstance(display_name, str) or not display_name:
        raise errors.displayname_invalid()
    return display_name


def _to_transport(credential) -> Dict[str, Any]:
    """Normalize a client credential payload to the JSON dict the engine expects."""
    if hasattr(credential, "model_dump"):
        credential = credential.model_dump(mode="json")
    if isinstance(credential, (str, bytes)):
        try:
            credential = json.loads(credential)
        except ValueError as e:
            raise errors.credential_data_invalid(e) from e
    if not isinstance(credential, dict) or not credential:
        raise errors.credential_data_invalid()
    try:
        return json.loads(json.dumps(credential))
    except (TypeError, ValueError) as e:
        raise errors.credential_data_invalid(e) from e


def _handle_text(handle: bytes) -> str:
    try:
        return handle.decode("utf-8")
    except UnicodeDecodeError as e:
        raise errors.decode_error("USER_HANDLE_DECODE_ERROR", "Failed to get session data", e) from e


class CeremonyOrchestrator:
    """
    Registration and login ceremonies over a credential store, a session
    cache and a protocol engine.

    Policies:
      exclude_existing_credentials: advertise the stored credential in
        excludeCredentials at registration-begin (off: re-registration
        replaces the stored credential).
      assume_backup_eligible: treat the stored credential as backup eligible
        at login-finish regardless of the stored flag.
      delete_session_on_finish: drop the cache entry after a successful
        finish so the same session cannot be finished twice.
      enforce_sign_count: reject a login whose reported sign count does not
        increase (both zero is allowed).
    """

    def __init__(
        self,
        storage,
        cache,
        engine,
        *,
        session_ttl: int = DEFAULT_SESSION_TTL,
        exclude_existing_credentials: bool = False,
        assume_backup_eligible: bool = True,
        delete_session_on_finish: bool = True,
        enforce_sign_count: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.cache = cache
        self.engine = engine
        self.session_ttl = int(session_ttl)
        self.exclude_existing_credentials = exclude_existing_credentials
        self.assume_backup_eligible = assume_backup_eligible
        self.delete_session_on_finish = delete_session_on_finish
        self.enforce_sign_count = enforce_sign_count
        self.logger = logger or logging.getLogger(__name__)

    # ==================== Public operations ====================

    def begin_registration(self, username) -> CeremonyResult:
        """Issue a registration challenge for an existing identity.

        Success value: the engine's credential creation options.
        """
        return self._run("begin_registration", username, self._begin_registration, username)

    def finish_registration(self, username, display_name, credential) -> CeremonyResult:
        """Verify a registration response and persist the new credential.

        Success value: {"credential": {...}, "username": ..., "displayname": ...}
        """
        return self._run(
            "finish_registration", username, self._finish_registration, username, display_name, credential
        )

    def begin_login(self, username) -> CeremonyResult:
        """Issue a login challenge bound to the user's stored credential.

        Success value: the engine's credential request options.
        """
        return self._run("begin_login", username, self._begin_login, username)

    def finish_login(self, username, credential) -> CeremonyResult:
        """Verify a login assertion and record the new sign count.

        Success value: the verified CeremonyUser.
        """
        return self._run("finish_login", username, self._finish_login, username, credential)

    # ==================== Boundary ====================

    def _run(self, step, username, fn, *args) -> CeremonyResult:
        try:
            value = fn(*args)
        except CeremonyError as e:
            self._log_failure(step, username, e)
            return CeremonyResult.failure(e)
        except Exception as e:
            self.logger.exception("Unexpected error in %s for username=%r", step, username)
            return CeremonyResult.failure(errors.unexpected_error(e))

        self.logger.info("%s succeeded for username=%r", step, username)
        return CeremonyResult.success(value)

    def _log_failure(self, step, username, error):
        if error.kind in _CLIENT_SIDE_KINDS:
            self.logger.warning(
                "%s rejected for username=%r: %s", step, username, error.code
            )
        else:
            self.logger.error(
                "%s failed for username=%r: %s (%r)", step, username, error.code, error.cause
            )

    # ==================== Helpers ====================

    def _load_identity(self, username) -> Identity:
        row = self.storage.get_identity(username)
        if not row:
            raise errors.user_not_found()
        return Identity.from_row(row)

    def _new_user_handle(self) -> bytes:
        try:
            return str(uuid.uuid4()).encode("utf-8")
        except OSError as e:
            raise errors.unexpected_error(e, code="UUID_GENERATION_ERROR") from e

    def _decode_credential(self, identity: Identity, backup_eligible: bool) -> Credential:
        try:
            credential_id = b64url_decode(identity.credential_id)
        except ValueError as e:
            raise errors.decode_error(
                "CREDENTIAL_ID_DECODE_ERROR", "Failed to decode webauthn credential id", e
            ) from e
        try:
            public_key = b64url_decode(identity.public_key)
        except ValueError as e:
            raise errors.decode_error(
                "CREDENTIAL_PUBLIC_KEY_DECODE_ERROR", "Failed to decode public key", e
            ) from e

        return Credential(
            credential_id=credential_id,
            public_key=public_key,
            sign_count=identity.sign_count,
            backup_eligible=backup_eligible,
        )

    def _store_session(self, kind, username, session: CeremonySession):
        # Overwrites any unfinished ceremony of the same kind for this user
        self.cache.set(session_key(kind, username), session.to_json(), self.session_ttl)

    def _load_session(self, kind, username) -> CeremonySession:
        blob = self.cache.get(session_key(kind, username))
        if blob is None:
            raise errors.session_not_found()
        return CeremonySession.from_json(blob)

    def _discard_session(self, kind, username):
        if not self.delete_session_on_finish:
            return
        try:
            self.cache.delete(session_key(kind, username))
        except CeremonyError as e:
            # The store write already happened; the entry still expires by TTL
            self.logger.warning(
                "Could not delete %s session for username=%r: %s", kind.value, username, e.code
            )

    # ==================== Registration ====================

    def _begin_registration(self, username):
        username = _require_username(username)
        identity = self._load_identity(username)

        handle = identity.user_handle or self._new_user_handle()

        exclude = ()
        if self.exclude_existing_credentials and identity.has_credential:
            exclude = (self._decode_credential(identity, identity.backup_eligible),)

        user = CeremonyUser(
            user_handle=handle,
            name=username,
            display_name=identity.display_name or username,
        )
        options, session = self.engine.begin_registration(user, exclude_credentials=exclude)
        self._store_session(CeremonyKind.REGISTER, username, session)
        return options

    def _finish_registration(self, username, display_name, credential):
        username = _require_username(username)
        display_name = _require_display_name(display_name)
        payload = _to_transport(credential)

        session = self._load_session(CeremonyKind.REGISTER, username)
        try:
            handle = b64url_decode(session.user_handle)
        except ValueError as e:
            raise errors.decode_error("SESSION_DECODE_ERROR", "Failed to get session data", e) from e

        # The identity may have been removed while the browser was signing
        self._load_identity(username)

        user = CeremonyUser(user_handle=handle, name=username, display_name=display_name)
        verified = self.engine.finish_registration(user, session, payload)

        rows = self.storage.save_credential(
            username,
            user_handle=_handle_text(handle),
            display_name=display_name,
            credential_id=b64url_encode(verified.credential_id),
            public_key=b64url_encode(verified.public_key),
            sign_count=verified.sign_count,
            backup_eligible=verified.backup_eligible,
        )
        if not rows:
            raise errors.user_not_found()

        self._discard_session(CeremonyKind.REGISTER, username)
        return {
            "credential": verified.to_dict(),
            "username": username,
            "displayname": display_name,
        }

    # ==================== Authentication ====================

    def _login_user(self, identity: Identity, username, backup_eligible) -> CeremonyUser:
        if not identity.has_credential or not identity.user_handle:
            raise errors.credential_not_found()
        credential = self._decode_credential(identity, backup_eligible)
        return CeremonyUser(
            user_handle=identity.user_handle,
            name=username,
            display_name=identity.display_name or username,
            credentials=(credential,),
        )

    def _begin_login(self, username):
        username = _require_username(username)
        identity = self._load_identity(username)
        user = self._login_user(identity, username, identity.backup_eligible)

        options, session = self.engine.begin_login(user)
        self._store_session(CeremonyKind.LOGIN, username, session)
        return options

    def _finish_login(self, username, credential):
        username = _require_username(username)
        payload = _to_transport(credential)

        session = self._load_session(CeremonyKind.LOGIN, username)

        # Re-read: the credential may have changed since begin
        identity = self._load_identity(username)
        backup_eligible = True if self.assume_backup_eligible else identity.backup_eligible
        user = self._login_user(identity, username, backup_eligible)
        stored = user.credentials[0]

        verified = self.engine.finish_login(user, session, payload)

        new_count = verified.sign_count
        if not 0 <= new_count <= MAX_SIGN_COUNT:
            raise errors.verification_error("SIGN_COUNT_INVALID_ERROR", "Verification failed")
        if self.enforce_sign_count and (new_count or stored.sign_count) and new_count <= stored.sign_count:
            raise errors.verification_error("SIGN_COUNT_REGRESSION_ERROR", "Verification failed")

        rows = self.storage.update_sign_count(username, new_count)
        if not rows:
            raise errors.user_not_found()

        self._discard_session(CeremonyKind.LOGIN, username)
        return CeremonyUser(
            user_handle=user.user_handle,
            name=user.name,
            display_name=user.display_name,
            credentials=(verified,),
        )
