import logging, os
from dataclasses import dataclass, field
from typing import Optional

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cipherdrop.common.envelope import (
    EncryptionEnvelope, HybridEnvelope, PassphraseLayer, RsaEnvelope,
)
from cipherdrop.common.errors import (
    DecryptionError, EncryptionError, KeyGenerationError, KeyImportError, NotReadyError,
)

logger = logging.getLogger(__name__)

RSA_KEY_BITS = 2048
RSA_PUBLIC_EXPONENT = 65537
# largest plaintext RSA-OAEP/SHA-256 takes with a 2048-bit modulus: 256 - 2*32 - 2
RSA_OAEP_MAX_PLAINTEXT = 190
AES_KEY_BITS = 256
NONCE_BYTES = 12
SALT_BYTES = 16
PBKDF2_ITERATIONS = 100_000
PEM_LABEL = "PUBLIC KEY"


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()),
                        algorithm=hashes.SHA256(),
                        label=None)


def rsa_generate(bits: int = RSA_KEY_BITS) -> rsa.RSAPrivateKey:
    '''
    The function generates an RSA private key.
        Input: key size in bits (default 2048)
        Output: private key object
    '''
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=bits)


def rsa_public_pem(pub: rsa.RSAPublicKey) -> str:
    '''
    The function exports a public key as PEM text.
        Input: RSA public key object
        Output: PEM string (SubjectPublicKeyInfo, 64 characters per line)
    '''
    pem = pub.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return pem.decode()


def aes_key() -> bytes:
    '''This function generates a random 256-bit AES key'''
    return AESGCM.generate_key(bit_length=AES_KEY_BITS)


def aes_encrypt(key: bytes, plaintext: bytes):
    '''
    This function encrypts plaintext using AES-GCM under a fresh random nonce.
    Input:
        - key: AES key in bytes (256 bits)
        - plaintext: data to encrypt in bytes
    Output: tuple (nonce, ciphertext with the 16-byte tag appended)
    '''
    nonce = os.urandom(NONCE_BYTES)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, None)


def aes_decrypt(key: bytes, nonce: bytes, ct: bytes) -> bytes:
    ''' This function decrypts and authenticates AES-GCM ciphertext (tag appended) '''
    return AESGCM(key).decrypt(nonce, ct, None)


def derive_passphrase_key(passphrase: str, salt: bytes) -> bytes:
    '''
    This function stretches a human shared passphrase into a 256-bit AES key.
    Input:
        - passphrase: the shared secret text
        - salt: random salt, 16 bytes
    Output: 32-byte key (PBKDF2-HMAC-SHA256)
    '''
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=AES_KEY_BITS // 8,
                     salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(passphrase.encode("utf-8"))


class PublicKeyHandle:
    ''' Encrypt-only view of a peer's RSA public key '''

    def __init__(self, key: rsa.RSAPublicKey):
        self._key = key

    @property
    def key_size(self) -> int:
        return self._key.key_size

    @property
    def pem(self) -> str:
        return rsa_public_pem(self._key)

    def encrypt(self, plaintext: bytes) -> bytes:
        ''' RSA-OAEP (MGF1-SHA256, SHA-256) encryption of a short plaintext '''
        return self._key.encrypt(plaintext, _oaep())

    def __repr__(self):
        return f"PublicKeyHandle(rsa-{self.key_size})"


@dataclass(frozen=True)
class KeyPair:
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey = field(repr=False)   # never leaves this process


class Keyring:
    '''
    Holds the one RSA keypair of a party for the lifetime of its session.
    The private half is only used through open_envelope().
    '''

    def __init__(self, cipher: Optional["HybridCipher"] = None):
        self._pair: Optional[KeyPair] = None
        self.cipher = cipher or HybridCipher()

    @property
    def ready(self) -> bool:
        return self._pair is not None

    def generate(self) -> KeyPair:
        ''' Create the session keypair. Raises KeyGenerationError on provider failure or a second call '''
        if self._pair is not None:
            raise KeyGenerationError("a keypair already exists for this session")
        try:
            priv = rsa_generate()
        except (UnsupportedAlgorithm, ValueError) as e:
            logger.error("RSA key generation failed: %s", e)
            raise KeyGenerationError(str(e)) from e
        self._pair = KeyPair(public_key=priv.public_key(), private_key=priv)
        logger.debug("Generated RSA-%d session keypair", RSA_KEY_BITS)
        return self._pair

    def export_public(self) -> str:
        ''' PEM text of the local public key, ready for register-public-key '''
        if self._pair is None:
            raise NotReadyError("no keypair generated yet")
        return rsa_public_pem(self._pair.public_key)

    @staticmethod
    def import_public(pem: str) -> PublicKeyHandle:
        '''
        This function parses a peer's PEM public key.
        Input: PEM text as produced by export_public
        Output: encrypt-only PublicKeyHandle
        Raises KeyImportError on anything that is not a PEM RSA key of at least 2048 bits.
        '''
        if not isinstance(pem, str):
            raise KeyImportError("public key must be PEM text")
        begin, end = f"-----BEGIN {PEM_LABEL}-----", f"-----END {PEM_LABEL}-----"
        if begin not in pem or end not in pem:
            raise KeyImportError("public key is missing PEM markers")
        try:
            key = serialization.load_pem_public_key(pem.encode())
        except (ValueError, UnsupportedAlgorithm) as e:
            raise KeyImportError("public key could not be parsed") from e
        if not isinstance(key, rsa.RSAPublicKey):
            raise KeyImportError("public key is not an RSA key")
        if key.key_size < RSA_KEY_BITS:
            raise KeyImportError(f"RSA key too small ({key.key_size} bits)")
        return PublicKeyHandle(key)

    def open_envelope(self, envelope: EncryptionEnvelope, passphrase: Optional[str] = None) -> bytes:
        ''' Decrypt an envelope addressed to this party '''
        if self._pair is None:
            raise NotReadyError("no keypair generated yet")
        return self.cipher.decrypt(envelope, self._pair.private_key, passphrase)


class HybridCipher:
    '''
    RSA-OAEP + AES-256-GCM envelope encryption with an optional
    passphrase-derived inner layer.
    '''

    rsa_threshold = RSA_OAEP_MAX_PLAINTEXT

    def encrypt(self, payload: bytes, recipient: PublicKeyHandle,
                passphrase: Optional[str] = None) -> EncryptionEnvelope:
        '''
        This function wraps a payload for one recipient.
        Input:
            - payload: file content
            - recipient: the recipient's public key handle
            - passphrase: optional shared secret; adds an inner PBKDF2 + AES-GCM layer
        Output: RsaEnvelope when the (wrapped) payload fits in one RSA block, else HybridEnvelope
        '''
        if passphrase is not None and not passphrase:
            raise EncryptionError("passphrase must not be empty")
        try:
            layer = None
            if passphrase is not None:
                salt = os.urandom(SALT_BYTES)
                nonce, payload = aes_encrypt(derive_passphrase_key(passphrase, salt), bytes(payload))
                layer = PassphraseLayer(salt=salt, iv=nonce)

            if len(payload) <= self.rsa_threshold:
                return RsaEnvelope(data=recipient.encrypt(bytes(payload)), passphrase=layer)

            key = aes_key()
            iv, ct = aes_encrypt(key, bytes(payload))
            return HybridEnvelope(encrypted_data=ct,
                                  encrypted_key=recipient.encrypt(key),
                                  iv=iv,
                                  passphrase=layer)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error("Encryption failed: %s", e)
            raise EncryptionError(str(e)) from e

    def decrypt(self, envelope: EncryptionEnvelope, private_key: rsa.RSAPrivateKey,
                passphrase: Optional[str] = None) -> bytes:
        '''
        This function opens an envelope. It never mutates the envelope and can be
        repeated. Every failure is reported as the same DecryptionError.
        '''
        try:
            if isinstance(envelope, RsaEnvelope):
                data = private_key.decrypt(envelope.data, _oaep())
            elif isinstance(envelope, HybridEnvelope):
                key = private_key.decrypt(envelope.encrypted_key, _oaep())
                data = aes_decrypt(key, envelope.iv, envelope.encrypted_data)
            else:
                raise TypeError(f"unsupported envelope: {type(envelope).__name__}")

            if envelope.passphrase is not None:
                if not passphrase:
                    raise ValueError("passphrase required")
                layer = envelope.passphrase
                data = aes_decrypt(derive_passphrase_key(passphrase, layer.salt), layer.iv, data)
            return data
        except (InvalidTag, ValueError, TypeError) as e:
            # keep the cause out of the message; debug log only
            logger.debug("Envelope could not be opened (%s)", type(e).__name__)
            raise DecryptionError() from None
