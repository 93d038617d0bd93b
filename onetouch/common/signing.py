"""Request signing for the OneTouch protocol.

The provider authenticates a request by a keyed digest over the *values* of
its parameters, sorted by parameter name, each followed by a newline. For
token-bearing requests the token owner's KIN is appended the same way.

Two digests exist: HMAC-SHA256 (`CHECKSUM`, token flow) and HMAC-SHA1
(`APPCHECK`, no-registration flow). Which one an endpoint expects is part of
the endpoint table, never guessed from the request.
"""

import hashlib
import hmac
import re
from enum import Enum
from typing import Any, Mapping

from onetouch.common.errors import InvalidInputError


PARAM_NAME_RE = re.compile(r"^[A-Z0-9_]+$")
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1F\x7F]")
KIN_RE = re.compile(r"^[A-Z0-9]+$")
TOKEN_PARAM = "TOKEN"


class DigestAlgorithm(str, Enum):
    HMAC_SHA256 = "sha256"
    HMAC_SHA1 = "sha1"


class SignatureScheme(Enum):
    """Wire parameter name bound to the digest it carries."""

    CHECKSUM = ("CHECKSUM", DigestAlgorithm.HMAC_SHA256)
    APPCHECK = ("APPCHECK", DigestAlgorithm.HMAC_SHA1)

    def __init__(self, param: str, algorithm: DigestAlgorithm) -> None:
        self.param = param
        self.algorithm = algorithm


SIGNATURE_PARAMS = frozenset(scheme.param for scheme in SignatureScheme)


def render_value(name: str, value: Any) -> str:
    if value is None or isinstance(value, (Mapping, list, tuple, set, bytes)):
        raise InvalidInputError(
            f"Invalid parameter value type for {name}: must be scalar",
            {"param": name},
        )
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def canonical_string(params: Mapping[str, Any], kin: str | None = None) -> str:
    """Build the exact string the provider signs.

    Validation runs over every parameter before anything is concatenated, so
    the work done does not depend on where a bad value sits.
    """

    rendered: dict[str, str] = {}
    bad_names: list[str] = []
    bad_values: list[str] = []
    for name, value in params.items():
        if name in SIGNATURE_PARAMS:
            continue
        if not isinstance(name, str) or not PARAM_NAME_RE.match(name):
            bad_names.append(str(name))
            continue
        text = render_value(name, value)
        if CONTROL_CHARS_RE.search(text):
            bad_values.append(name)
        rendered[name] = text

    if bad_names:
        raise InvalidInputError(f"Invalid parameter key format: {', '.join(bad_names)}", {"params": bad_names})
    if bad_values:
        raise InvalidInputError(
            f"Invalid parameter value for {', '.join(bad_values)}: contains control characters",
            {"params": bad_values},
        )

    parts = [rendered[name] + "\n" for name in sorted(rendered)]
    if kin and TOKEN_PARAM in rendered:
        if not KIN_RE.match(kin):
            raise InvalidInputError("Invalid KIN format")
        parts.append(kin + "\n")

    string_to_sign = "".join(parts)
    if not string_to_sign:
        raise InvalidInputError("Empty string for signature generation")
    return string_to_sign


def sign(
    params: Mapping[str, Any],
    secret_key: str,
    scheme: SignatureScheme = SignatureScheme.CHECKSUM,
    kin: str | None = None,
) -> str:
    """Return the hex digest for `params` under `scheme`."""

    if not secret_key:
        raise InvalidInputError("Secret key not configured")
    message = canonical_string(params, kin).encode("utf-8")
    digest = hashlib.sha256 if scheme.algorithm is DigestAlgorithm.HMAC_SHA256 else hashlib.sha1
    return hmac.new(secret_key.encode("utf-8"), message, digest).hexdigest()


def verify(
    params: Mapping[str, Any],
    signature: str,
    secret_key: str,
    scheme: SignatureScheme = SignatureScheme.CHECKSUM,
    kin: str | None = None,
) -> bool:
    """Constant-time comparison of `signature` against a fresh digest."""

    expected = sign(params, secret_key, scheme, kin)
    return hmac.compare_digest(expected.encode("ascii"), str(signature).encode("utf-8"))
