import base64, binascii, json
from dataclasses import dataclass
from typing import Optional, Union

from cipherdrop.common.errors import MalformedMessageError

# The envelope travels as JSON text inside the "encryptedData" field, so every
# binary field is base64 encoded. Field names match the wire format.

RSA = "rsa"
HYBRID = "hybrid"


@dataclass(frozen=True)
class PassphraseLayer:
    salt: bytes    # PBKDF2 salt
    iv: bytes      # AES-GCM nonce of the passphrase layer


@dataclass(frozen=True)
class RsaEnvelope:
    data: bytes     # RSA-OAEP ciphertext of the (maybe passphrase wrapped) payload
    passphrase: Optional[PassphraseLayer] = None

    type = RSA


@dataclass(frozen=True)
class HybridEnvelope:
    encrypted_data: bytes   # AES-GCM ciphertext (tag appended)
    encrypted_key: bytes    # one-time AES key wrapped with RSA-OAEP
    iv: bytes               # AES-GCM nonce for encrypted_data
    passphrase: Optional[PassphraseLayer] = None

    type = HYBRID


EncryptionEnvelope = Union[RsaEnvelope, HybridEnvelope]


def b64(b: bytes) -> str:
    ''' This function encodes bytes to a Base64 string '''
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    ''' This function decodes a Base64 string to bytes, rejecting non-alphabet characters '''
    return base64.b64decode(s.encode(), validate=True)


def envelope_to_dict(env: EncryptionEnvelope) -> dict:
    ''' This function converts an envelope to its JSON-ready dictionary '''
    if isinstance(env, RsaEnvelope):
        d = {"type": RSA, "data": b64(env.data)}
    elif isinstance(env, HybridEnvelope):
        d = {
            "type": HYBRID,
            "encryptedData": b64(env.encrypted_data),
            "encryptedKey": b64(env.encrypted_key),
            "iv": b64(env.iv),
        }
    else:
        raise TypeError(f"unsupported envelope: {type(env).__name__}")
    if env.passphrase is not None:
        d["salt"] = b64(env.passphrase.salt)
        d["passphraseIv"] = b64(env.passphrase.iv)
    return d


def envelope_from_dict(d: dict) -> EncryptionEnvelope:
    '''
    This function rebuilds an envelope from its dictionary form.
    Input: dictionary as produced by envelope_to_dict
    Output: RsaEnvelope or HybridEnvelope
    Raises MalformedMessageError when a field is missing or not valid base64.
    '''
    if not isinstance(d, dict):
        raise MalformedMessageError("envelope must be a JSON object")
    try:
        layer = None
        if "salt" in d or "passphraseIv" in d:
            layer = PassphraseLayer(salt=b64d(d["salt"]), iv=b64d(d["passphraseIv"]))
        kind = d.get("type")
        if kind == RSA:
            return RsaEnvelope(data=b64d(d["data"]), passphrase=layer)
        if kind == HYBRID:
            return HybridEnvelope(
                encrypted_data=b64d(d["encryptedData"]),
                encrypted_key=b64d(d["encryptedKey"]),
                iv=b64d(d["iv"]),
                passphrase=layer,
            )
    except KeyError as e:
        raise MalformedMessageError(f"envelope field missing: {e.args[0]}") from e
    except (AttributeError, binascii.Error, UnicodeEncodeError) as e:
        raise MalformedMessageError("envelope field is not valid base64") from e
    raise MalformedMessageError(f"unknown envelope type: {kind!r}")


def envelope_to_json(env: EncryptionEnvelope) -> str:
    return json.dumps(envelope_to_dict(env))


def envelope_from_json(text: str) -> EncryptionEnvelope:
    try:
        d = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError("envelope is not valid JSON") from e
    return envelope_from_dict(d)
