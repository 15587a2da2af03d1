from __future__ import annotations

import json

import pytest

from cipherdrop.common.envelope import (
    HybridEnvelope, PassphraseLayer, RsaEnvelope, envelope_from_json, envelope_to_dict,
    envelope_to_json,
)
from cipherdrop.common.errors import MalformedMessageError


def test_rsa_wire_shape():
    d = envelope_to_dict(RsaEnvelope(data=b"\x00\x01"))
    assert d == {"type": "rsa", "data": "AAE="}


def test_hybrid_wire_shape_with_passphrase_layer():
    env = HybridEnvelope(encrypted_data=b"d", encrypted_key=b"k", iv=b"i" * 12,
                         passphrase=PassphraseLayer(salt=b"s" * 16, iv=b"n" * 12))
    d = json.loads(envelope_to_json(env))
    assert set(d) == {"type", "encryptedData", "encryptedKey", "iv", "salt", "passphraseIv"}
    assert d["type"] == "hybrid"
    assert envelope_from_json(envelope_to_json(env)) == env


def test_envelope_is_immutable():
    env = RsaEnvelope(data=b"x")
    with pytest.raises(AttributeError):
        env.data = b"y"


@pytest.mark.parametrize("text", [
    "not json",
    "[]",
    '{"type": "rsa"}',
    '{"type": "rsa", "data": "***"}',
    '{"type": "rsa", "data": 5}',
    '{"type": "hybrid", "encryptedData": "AA==", "iv": "AA=="}',
    '{"type": "rsa", "data": "AA==", "salt": "AA=="}',
    '{"type": "ecc", "data": "AA=="}',
])
def test_malformed_envelopes(text):
    with pytest.raises(MalformedMessageError):
        envelope_from_json(text)


def test_unknown_variant_cannot_be_serialized():
    with pytest.raises(TypeError):
        envelope_to_dict({"type": "rsa"})
