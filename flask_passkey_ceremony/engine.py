"""
engine.py: WebAuthn protocol engine for flask-passkey-ceremony

Thin, stateless wrapper around py_webauthn:
- begin_* builds browser options plus the server-side CeremonySession.
- finish_* verifies a client response against that session and returns the
  verified Credential.
- Library exceptions are translated to CeremonyError; nothing library-specific
  leaks out.

One instance is built per app from config and handed to the orchestrator.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
    InvalidJSONStructure,
    InvalidPublicKeyStructure,
    InvalidRegistrationResponse,
    UnsupportedPublicKeyType,
)
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    CredentialDeviceType,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from . import errors
from .models import CeremonySession, CeremonyUser, Credential
from .utils import b64url_decode, b64url_encode

_VERIFICATION_ERRORS = (
    InvalidRegistrationResponse,
    InvalidAuthenticationResponse,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
    InvalidPublicKeyStructure,
    UnsupportedPublicKeyType,
    ValueError,
)


def _registration_failed(cause=None):
    return errors.verification_error("WEBAUTHN_FINISH_REGISTRATION_ERROR", "Verification failed", cause)


def _login_failed(cause=None):
    return errors.verification_error("WEBAUTHN_FINISH_LOGIN_ERROR", "Verification failed", cause)


def _decode_session_field(value):
    try:
        return b64url_decode(value)
    except ValueError as e:
        raise errors.decode_error("SESSION_DECODE_ERROR", "Failed to get session data", e) from e


class ProtocolEngine:
    """
    WebAuthn begin/finish primitives for one relying party.

    Typical flow:
      1) begin_registration(user) -> (options, session); session is cached
      2) browser: navigator.credentials.create(options)
      3) finish_registration(user, session, credential) -> Credential
    Login follows the same shape with begin_login / finish_login.
    """

    def __init__(
        self,
        rp_id: str,
        rp_name: str,
        origin,
        *,
        timeout_ms: int = 60000,
        user_verification: str = "preferred",  # "required" | "preferred" | "discouraged"
        require_user_verification: Optional[bool] = None,
    ):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = int(timeout_ms)
        self.user_verification = UserVerificationRequirement(user_verification)
        if require_user_verification is None:
            require_user_verification = self.user_verification == UserVerificationRequirement.REQUIRED
        self.require_user_verification = require_user_verification

    def _requires_user_verification(self, session: CeremonySession) -> bool:
        # The level the session was begun with still applies at finish
        return self.require_user_verification or session.user_verification == "required"

    def _options_payload(self, options) -> Dict[str, Any]:
        return {"publicKey": json.loads(options_to_json(options))}

    # ==================== Registration ====================

    def begin_registration(
        self, user: CeremonyUser, exclude_credentials: Iterable[Credential] = ()
    ) -> Tuple[Dict[str, Any], CeremonySession]:
        exclude = [PublicKeyCredentialDescriptor(id=c.credential_id) for c in exclude_credentials]

        try:
            options = generate_registration_options(
                rp_id=self.rp_id,
                rp_name=self.rp_name,
                user_id=user.user_handle,
                user_name=user.name,
                user_display_name=user.display_name,
                timeout=self.timeout_ms,
                authenticator_selection=AuthenticatorSelectionCriteria(
                    resident_key=ResidentKeyRequirement.PREFERRED,
                    user_verification=self.user_verification,
                ),
                exclude_credentials=exclude or None,
            )
        except (TypeError, ValueError) as e:
            raise errors.unexpected_error(e, code="WEBAUTHN_BEGIN_REGISTRATION_ERROR") from e

        session = CeremonySession(
            challenge=bytes_to_base64url(options.challenge),
            user_handle=b64url_encode(user.user_handle),
            user_verification=self.user_verification.value,
        )
        return self._options_payload(options), session

    def finish_registration(
        self, user: CeremonyUser, session: CeremonySession, credential: Dict[str, Any]
    ) -> Credential:
        if _decode_session_field(session.user_handle) != user.user_handle:
            raise _registration_failed()
        expected_challenge = _decode_session_field(session.challenge)

        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=self._requires_user_verification(session),
            )
        except InvalidJSONStructure as e:
            raise errors.credential_data_invalid(e) from e
        except _VERIFICATION_ERRORS as e:
            raise _registration_failed(e) from e

        return Credential(
            credential_id=bytes(verified.credential_id),
            public_key=bytes(verified.credential_public_key),
            sign_count=int(verified.sign_count),
            backup_eligible=verified.credential_device_type == CredentialDeviceType.MULTI_DEVICE,
        )

    # ==================== Authentication ====================

    def begin_login(self, user: CeremonyUser) -> Tuple[Dict[str, Any], CeremonySession]:
        allow = [PublicKeyCredentialDescriptor(id=c.credential_id) for c in user.credentials]

        try:
            options = generate_authentication_options(
                rp_id=self.rp_id,
                timeout=self.timeout_ms,
                allow_credentials=allow,
                user_verification=self.user_verification,
            )
        except (TypeError, ValueError) as e:
            raise errors.unexpected_error(e, code="WEBAUTHN_BEGIN_LOGIN_ERROR") from e

        session = CeremonySession(
            challenge=bytes_to_base64url(options.challenge),
            user_handle=b64url_encode(user.user_handle),
            user_verification=self.user_verification.value,
            allowed_credential_ids=[b64url_encode(c.credential_id) for c in user.credentials],
        )
        return self._options_payload(options), session

    def _asserted_credential_id(self, credential: Dict[str, Any]) -> bytes:
        raw_id = credential.get("rawId") or credential.get("id")
        try:
            return b64url_decode(raw_id)
        except ValueError as e:
            raise errors.credential_data_invalid(e) from e

    def _asserted_user_handle(self, credential: Dict[str, Any]) -> Optional[bytes]:
        response = credential.get("response")
        if not isinstance(response, dict) or not response.get("userHandle"):
            return None
        try:
            return b64url_decode(response["userHandle"])
        except ValueError as e:
            raise errors.credential_data_invalid(e) from e

    def finish_login(
        self, user: CeremonyUser, session: CeremonySession, credential: Dict[str, Any]
    ) -> Credential:
        if not isinstance(credential, dict):
            raise errors.credential_data_invalid()
        if _decode_session_field(session.user_handle) != user.user_handle:
            raise _login_failed()
        expected_challenge = _decode_session_field(session.challenge)

        credential_id = self._asserted_credential_id(credential)
        stored = user.find_credential(credential_id)
        if stored is None:
            raise _login_failed()
        if session.allowed_credential_ids and b64url_encode(credential_id) not in session.allowed_credential_ids:
            raise _login_failed()

        asserted_handle = self._asserted_user_handle(credential)
        if asserted_handle is not None and asserted_handle != user.user_handle:
            raise _login_failed()

        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=stored.public_key,
                credential_current_sign_count=stored.sign_count,
                require_user_verification=self._requires_user_verification(session),
            )
        except InvalidJSONStructure as e:
            raise errors.credential_data_invalid(e) from e
        except _VERIFICATION_ERRORS as e:
            raise _login_failed(e) from e

        # A credential enrolled as single-device must not turn into a synced one
        if not stored.backup_eligible and verified.credential_device_type == CredentialDeviceType.MULTI_DEVICE:
            raise _login_failed()

        return Credential(
            credential_id=stored.credential_id,
            public_key=stored.public_key,
            sign_count=int(verified.new_sign_count),
            backup_eligible=stored.backup_eligible,
        )
