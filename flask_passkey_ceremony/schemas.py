"""Request bodies accepted by the ceremony routes, validated once at the boundary."""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from . import errors


class BeginCeremonyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: StrictStr = Field(min_length=1)


class FinishRegistrationRequest(BeginCeremonyRequest):
    displayname: StrictStr = Field(min_length=1)
    credential: Dict[str, Any] = Field(min_length=1)


class FinishLoginRequest(BeginCeremonyRequest):
    credential: Dict[str, Any] = Field(min_length=1)


_FIELD_ERRORS = {
    "username": errors.username_invalid,
    "displayname": errors.displayname_invalid,
    "credential": errors.credential_data_invalid,
}


def parse_request(schema, data):
    """Validate ``data`` against ``schema``.

    Raises:
        CeremonyError: INPUT_VALIDATION naming the first offending field.
    """
    if not isinstance(data, dict):
        raise errors.input_error("JSON_PARSE_ERROR", "Invalid JSON")

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = first["loc"][0] if first.get("loc") else None
        factory = _FIELD_ERRORS.get(field)
        if factory is None:
            raise errors.input_error("REQUEST_VALIDATION_ERROR", "Invalid request", e) from e
        raise factory(e) from e
