"""
Route helpers

Request header handling shared by every router.
"""

from typing import Optional

from ..errors import ErrorCode, ValidationError

ANONYMOUS_ACTOR = "anonymous"


def parse_if_match(header: Optional[str], body_version: Optional[int] = None) -> Optional[int]:
    """Expected plan version from ``If-Match`` or the request body.

    Accepts ``"7"``, ``W/"7"`` and bare ``7``. ``*`` or no header means no
    precondition. When both are given they have to agree.
    """
    header_version: Optional[int] = None
    if header is not None:
        raw = header.strip()
        if raw.startswith("W/"):
            raw = raw[2:]
        raw = raw.strip().strip('"')
        if raw and raw != "*":
            try:
                header_version = int(raw)
            except ValueError:
                raise ValidationError(
                    f"If-Match must carry a plan version, got {header!r}",
                    error_code=ErrorCode.INVALID_FIELD_FORMAT,
                    field_name="If-Match",
                    field_value=header,
                ) from None
    if header_version is not None and body_version is not None and header_version != body_version:
        raise ValidationError(
            "If-Match and expected_version disagree",
            error_code=ErrorCode.INVALID_FIELD_FORMAT,
            field_name="expected_version",
            field_value=body_version,
        )
    return header_version if header_version is not None else body_version


def resolve_actor(header: Optional[str]) -> str:
    actor = (header or "").strip()
    return actor[:128] if actor else ANONYMOUS_ACTOR


def etag_for(version: int) -> str:
    return f'"{version}"'
