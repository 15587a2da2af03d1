'''
Error types raised by the transfer core. Every one of them ends a single
transfer attempt and nothing more: the keyring and the connection survive.
'''


class TransferError(Exception):
    '''Base class for every recoverable transfer failure.'''
    pass


class KeyGenerationError(TransferError):
    '''Raised when the local RSA keypair cannot be created.'''
    pass


class KeyImportError(TransferError):
    '''Raised when a peer's exported public key cannot be parsed.'''
    pass


class EncryptionError(TransferError):
    '''Raised when a payload cannot be wrapped for the recipient.'''
    pass


class DecryptionError(TransferError):
    '''Raised for any failure while opening an envelope.

    The message is always the same so that a wrong key, a wrong passphrase and
    corrupted data look identical to the caller.
    '''
    def __init__(self):
        super().__init__(DECRYPTION_FAILED)


class NotReadyError(TransferError):
    '''Raised when an operation needs a keypair that is not generated or published yet.'''
    pass


class OutOfOrderError(TransferError):
    '''Raised when a message arrives in a state that does not expect it.'''
    pass


class TargetUnavailableError(TransferError):
    '''Raised when the relay does not know the requested party.'''
    pass


class PeerNotReadyError(TransferError):
    '''Raised when the relay has no public key registered for a party.'''
    pass


class MalformedMessageError(TransferError):
    '''Raised when a relay frame does not match the message contract.'''
    pass


DECRYPTION_FAILED = "Unable to decrypt the received file"

# relay error code -> exception type
RELAY_ERROR_CODES = {
    "TARGET_UNAVAILABLE": TargetUnavailableError,
    "PEER_NOT_READY": PeerNotReadyError,
    "MALFORMED": MalformedMessageError,
    "UNKNOWN_EVENT": MalformedMessageError,
}

_STATUS = {
    KeyGenerationError: "Error generating encryption keys",
    KeyImportError: "Received an invalid public key",
    EncryptionError: "Error encrypting file",
    DecryptionError: "Error decrypting file",
    NotReadyError: "Encryption keys not ready. Please wait...",
    OutOfOrderError: "Ignored an unexpected transfer message",
    TargetUnavailableError: "Target user not found",
    PeerNotReadyError: "Peer has no registered public key",
    MalformedMessageError: "Received a malformed message",
}


def error_from_relay(code, reason: str) -> TransferError:
    ''' This function turns a relay "error" frame into the matching exception '''
    cls = RELAY_ERROR_CODES.get(code, TransferError)
    return cls(reason)


def status_message(exc: BaseException) -> str:
    '''
    This function returns the short human readable line shown for an error.
    Decryption failures never mention which step failed.
    '''
    for cls, text in _STATUS.items():
        if isinstance(exc, cls):
            if cls is DecryptionError:
                return text
            detail = str(exc)
            return f"{text}: {detail}" if detail and detail != text else text
    return f"Error: {exc}"
