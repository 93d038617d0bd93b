"""Signature generation and verification."""

import hashlib
import hmac

import pytest

from onetouch.common.errors import InvalidInputError
from onetouch.common.signing import SignatureScheme, canonical_string, sign, verify


SECRET = "s3cret"


def _hmac(message: str, digest) -> str:
    return hmac.new(SECRET.encode(), message.encode(), digest).hexdigest()


def test_values_sorted_by_name():
    assert canonical_string({"B": "2", "A": "1", "C": 3}) == "1\n2\n3\n"


def test_order_independent():
    first = sign({"APPID": "app", "DEVICEID": "dev", "AMOUNT": 3400}, SECRET)
    second = sign({"AMOUNT": 3400, "DEVICEID": "dev", "APPID": "app"}, SECRET)
    assert first == second


def test_checksum_is_hmac_sha256():
    assert sign({"A": "1", "B": "2"}, SECRET) == _hmac("1\n2\n", hashlib.sha256)


def test_appcheck_is_hmac_sha1():
    assert sign({"A": "1"}, SECRET, SignatureScheme.APPCHECK) == _hmac("1\n", hashlib.sha1)


def test_kin_appended_only_with_token():
    assert canonical_string({"TOKEN": "tok", "A": "1"}, kin="12345") == "1\ntok\n12345\n"
    assert canonical_string({"A": "1"}, kin="12345") == "1\n"


def test_signature_params_are_excluded():
    assert canonical_string({"A": "1", "CHECKSUM": "x", "APPCHECK": "y"}) == "1\n"


def test_booleans_render_as_digits():
    assert canonical_string({"SAVECARD": True, "X": False}) == "1\n0\n"


def test_verify_round_trip():
    params = {"ID": "p1", "STATE": "3"}
    signature = sign(params, SECRET)
    assert verify(params, signature, SECRET)


def test_verify_rejects_single_flipped_character():
    params = {"ID": "p1", "STATE": "3"}
    signature = sign(params, SECRET)
    flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
    assert not verify(params, flipped, SECRET)
    assert not verify(params, signature.upper(), SECRET)


def test_verify_rejects_changed_value():
    signature = sign({"ID": "p1", "STATE": "3"}, SECRET)
    assert not verify({"ID": "p1", "STATE": "4"}, signature, SECRET)


@pytest.mark.parametrize("name", ["lower", "A-B", "STATE.TEXT", ""])
def test_bad_param_names(name):
    with pytest.raises(InvalidInputError):
        sign({name: "1"}, SECRET)


def test_control_characters_rejected():
    with pytest.raises(InvalidInputError):
        sign({"DESCRIPTION": "line\nbreak"}, SECRET)


def test_empty_secret_rejected():
    with pytest.raises(InvalidInputError):
        sign({"A": "1"}, "")


def test_empty_params_rejected():
    with pytest.raises(InvalidInputError):
        sign({}, SECRET)


def test_bad_kin_rejected():
    with pytest.raises(InvalidInputError):
        sign({"TOKEN": "t"}, SECRET, kin="bad kin")
