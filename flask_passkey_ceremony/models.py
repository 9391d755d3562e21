"""
Value types passed between the storage adapters, the protocol engine and the
ceremony orchestrator.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import errors
from .utils import b64url_encode


@dataclass(frozen=True)
class Identity:
    """A user row as the credential store returns it."""

    id: Any
    username: str
    user_handle: Optional[bytes] = None
    display_name: Optional[str] = None
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    sign_count: int = 0
    backup_eligible: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Identity":
        handle = row.get("webauthn_user_id")
        if isinstance(handle, str):
            handle = handle.encode("utf-8")
        return cls(
            id=row.get("id"),
            username=row.get("username"),
            user_handle=handle or None,
            display_name=row.get("webauthn_displayname"),
            credential_id=row.get("webauthn_credential_id") or None,
            public_key=row.get("webauthn_credential_public_key") or None,
            sign_count=int(row.get("webauthn_sign_count") or 0),
            backup_eligible=bool(row.get("webauthn_backup_eligible")),
        )

    @property
    def has_credential(self) -> bool:
        return bool(self.credential_id and self.public_key)


@dataclass(frozen=True)
class Credential:
    credential_id: bytes
    public_key: bytes
    sign_count: int = 0
    backup_eligible: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": b64url_encode(self.credential_id),
            "publicKey": b64url_encode(self.public_key),
            "signCount": self.sign_count,
            "backupEligible": self.backup_eligible,
        }


@dataclass(frozen=True)
class CeremonyUser:
    """The identity as presented to the protocol engine."""

    user_handle: bytes
    name: str
    display_name: str
    credentials: Tuple[Credential, ...] = ()

    def __post_init__(self):
        if not self.user_handle or not self.name or not self.display_name:
            raise errors.input_error(
                "USER_FIELDS_EMPTY_ERROR",
                "User ID, name, and display name cannot be empty",
            )
        for credential in self.credentials:
            if not credential.credential_id:
                raise errors.input_error("CREDENTIAL_ID_EMPTY_ERROR", "Credential ID cannot be empty")
            if not credential.public_key:
                raise errors.input_error(
                    "CREDENTIAL_PUBLIC_KEY_EMPTY_ERROR", "Credential public key cannot be empty"
                )

    def find_credential(self, credential_id: bytes) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.credential_id == credential_id:
                return credential
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": b64url_encode(self.user_handle),
            "name": self.name,
            "displayName": self.display_name,
            "credentials": [c.to_dict() for c in self.credentials],
        }


@dataclass(frozen=True)
class CeremonySession:
    """Server-side challenge state kept between begin and finish."""

    challenge: str
    user_handle: str
    user_verification: str = "preferred"
    allowed_credential_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps({
            "challenge": self.challenge,
            "user_id": self.user_handle,
            "user_verification": self.user_verification,
            "allowed_credential_ids": list(self.allowed_credential_ids),
            "created_at": self.created_at,
        })

    @classmethod
    def from_json(cls, blob) -> "CeremonySession":
        try:
            data = json.loads(blob)
            return cls(
                challenge=data["challenge"],
                user_handle=data["user_id"],
                user_verification=data.get("user_verification", "preferred"),
                allowed_credential_ids=list(data.get("allowed_credential_ids") or []),
                created_at=data.get("created_at", ""),
            )
        except (TypeError, ValueError, KeyError) as e:
            raise errors.decode_error("SESSION_DECODE_ERROR", "Failed to get session data", e) from e
