'''
Transfer lifecycle for both ends of one file exchange.

The sender walks IDLE -> REQUEST_SENT -> ACCEPTED -> ENCRYPTING -> SENT -> COMPLETE
(or REJECTED / ERRORED), the receiver IDLE -> REQUEST_RECEIVED -> ACCEPT_SENT ->
AWAITING_DATA -> DECRYPTING -> COMPLETE (or REJECT_SENT / FAILED). Every transfer
is keyed by a transfer id minted by the sender, so a message for an unknown id or
for a transfer in the wrong state is refused with OutOfOrderError and changes
nothing.
'''
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional, Type, TypeVar

from cipherdrop.common.crypto import HybridCipher, Keyring
from cipherdrop.common.envelope import EncryptionEnvelope, envelope_from_json, envelope_to_json
from cipherdrop.common.errors import (
    DecryptionError, EncryptionError, KeyImportError, MalformedMessageError,
    NotReadyError, OutOfOrderError, TargetUnavailableError, TransferError, error_from_relay,
)
from cipherdrop.common.messages import (
    AcceptTransfer, EncryptedData, ErrorMessage, FileMetadata, KeyRegistered, Message,
    ReceiveData, RegisterPublicKey, RejectTransfer, RequestTransfer, TransferAccepted,
    TransferRejected, TransferRequest, Welcome,
)

logger = logging.getLogger(__name__)

DEFAULT_PASSPHRASE_ATTEMPTS = 3


class SenderState(str, Enum):
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERRORED = "errored"
    ENCRYPTING = "encrypting"
    SENT = "sent"
    COMPLETE = "complete"


class ReceiverState(str, Enum):
    IDLE = "idle"
    REQUEST_RECEIVED = "request_received"
    ACCEPT_SENT = "accept_sent"
    REJECT_SENT = "reject_sent"
    AWAITING_DATA = "awaiting_data"
    DECRYPTING = "decrypting"
    COMPLETE = "complete"
    FAILED = "failed"


class _Transfer:
    terminal: frozenset = frozenset()
    failed_state = None

    def __init__(self, transfer_id: str, peer: str, initial):
        self.transfer_id = transfer_id
        self.peer = peer
        self.state = initial
        self.history = [initial]
        self.error: Optional[TransferError] = None

    @property
    def done(self) -> bool:
        return self.state in self.terminal

    def _expect(self, event: str, *states) -> None:
        if self.state not in states:
            raise OutOfOrderError(f"{event} not expected for transfer {self.transfer_id} in state {self.state.value}")

    def _expect_peer(self, event: str, peer: str) -> None:
        if peer != self.peer:
            raise OutOfOrderError(f"{event} for transfer {self.transfer_id} came from {peer}, expected {self.peer}")

    def _move(self, state) -> None:
        logger.debug("transfer %s: %s -> %s", self.transfer_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, exc: TransferError) -> None:
        ''' End the attempt with an error; a transfer already finished keeps its state '''
        if self.done:
            return
        self.error = exc
        self._move(self.failed_state)


class SenderTransfer(_Transfer):
    terminal = frozenset({SenderState.REJECTED, SenderState.ERRORED, SenderState.COMPLETE})
    failed_state = SenderState.ERRORED

    def __init__(self, transfer_id: str, target: str, metadata: FileMetadata,
                 payload: bytes, passphrase: Optional[str] = None):
        super().__init__(transfer_id, target, SenderState.IDLE)
        self.metadata = metadata
        self._payload: Optional[bytes] = payload
        self.size = len(payload)
        self._passphrase = passphrase
        self.envelope_type: Optional[str] = None

    def request(self) -> RequestTransfer:
        self._expect("request-transfer", SenderState.IDLE)
        self._move(SenderState.REQUEST_SENT)
        return RequestTransfer(self.transfer_id, self.peer, self.metadata.original_name)

    def on_accepted(self, msg: TransferAccepted, cipher: HybridCipher) -> EncryptedData:
        '''
        The recipient accepted: encrypt for the key it sent and build the
        encrypted-data message. The state only becomes SENT once the envelope exists.
        '''
        self._expect(msg.EVENT, SenderState.REQUEST_SENT)
        self._expect_peer(msg.EVENT, msg.target_party)
        self._move(SenderState.ACCEPTED)
        try:
            recipient = Keyring.import_public(msg.recipient_public_key)
            self._move(SenderState.ENCRYPTING)
            envelope = cipher.encrypt(self._payload, recipient, self._passphrase)
        except (KeyImportError, EncryptionError) as e:
            self.fail(e)
            raise
        finally:
            self._payload = None
            self._passphrase = None
        self.envelope_type = envelope.type
        out = EncryptedData(
            transfer_id=self.transfer_id,
            target_party=self.peer,
            encrypted_data=envelope_to_json(envelope),
            original_name=self.metadata.original_name,
            file_type=self.metadata.mime_type,
            file_extension=self.metadata.extension,
        )
        self._move(SenderState.SENT)
        return out

    def on_rejected(self, msg: TransferRejected) -> None:
        self._expect(msg.EVENT, SenderState.REQUEST_SENT)
        self._expect_peer(msg.EVENT, msg.target_party)
        self._payload = None
        self._passphrase = None
        self._move(SenderState.REJECTED)

    def mark_delivered(self) -> None:
        ''' The encrypted-data frame was handed to the relay '''
        self._expect("delivery", SenderState.SENT)
        self._move(SenderState.COMPLETE)


class ReceiverTransfer(_Transfer):
    terminal = frozenset({ReceiverState.REJECT_SENT, ReceiverState.COMPLETE, ReceiverState.FAILED})
    failed_state = ReceiverState.FAILED

    def __init__(self, request: TransferRequest, max_attempts: int = DEFAULT_PASSPHRASE_ATTEMPTS):
        super().__init__(request.transfer_id, request.source_party, ReceiverState.IDLE)
        self.file_name = request.file_name
        self.sender_public_key = request.sender_public_key
        self.max_attempts = max_attempts
        self.attempts = 0
        self.metadata: Optional[FileMetadata] = None
        self._envelope: Optional[EncryptionEnvelope] = None
        self._move(ReceiverState.REQUEST_RECEIVED)

    @property
    def needs_passphrase(self) -> bool:
        return self._envelope is not None and self._envelope.passphrase is not None

    def accept(self) -> AcceptTransfer:
        self._expect("accept-transfer", ReceiverState.REQUEST_RECEIVED)
        self._move(ReceiverState.ACCEPT_SENT)
        self._move(ReceiverState.AWAITING_DATA)
        return AcceptTransfer(self.transfer_id, self.peer)

    def reject(self) -> RejectTransfer:
        self._expect("reject-transfer", ReceiverState.REQUEST_RECEIVED)
        self._move(ReceiverState.REJECT_SENT)
        return RejectTransfer(self.transfer_id, self.peer)

    def on_data(self, msg: ReceiveData) -> None:
        ''' Take the envelope; only valid once, right after accepting, from the requesting party '''
        self._expect(msg.EVENT, ReceiverState.AWAITING_DATA)
        self._expect_peer(msg.EVENT, msg.source_party)
        try:
            envelope = envelope_from_json(msg.encrypted_data)
        except MalformedMessageError:
            # undecodable ciphertext reads the same as any other corruption
            err = DecryptionError()
            self.fail(err)
            raise err from None
        self._envelope = envelope
        self.metadata = msg.metadata
        self._move(ReceiverState.DECRYPTING)

    def open(self, keyring: Keyring, passphrase: Optional[str] = None) -> bytes:
        '''
        Decrypt the stored envelope. A wrong passphrase can be retried until
        max_attempts is reached; any other failure ends the transfer.
        '''
        self._expect("decrypt", ReceiverState.DECRYPTING)
        try:
            data = keyring.open_envelope(self._envelope, passphrase)
        except DecryptionError as e:
            self.attempts += 1
            if not self.needs_passphrase or self.attempts >= self.max_attempts:
                self._envelope = None
                self.fail(e)
            raise
        self._envelope = None
        self._move(ReceiverState.COMPLETE)
        return data


@dataclass(frozen=True)
class ReceivedFile:
    transfer_id: str
    source_party: str
    metadata: FileMetadata
    data: bytes


T = TypeVar("T", bound=_Transfer)


class TransferManager:
    '''
    All transfers of one party, keyed by transfer id. Turns inbound relay
    messages into state transitions and returns whatever must be sent back.
    '''

    def __init__(self, keyring: Optional[Keyring] = None,
                 max_passphrase_attempts: int = DEFAULT_PASSPHRASE_ATTEMPTS):
        self.keyring = keyring or Keyring()
        self.max_passphrase_attempts = max_passphrase_attempts
        self.party_id: Optional[str] = None
        self._published = False
        self._lock = Lock()
        self._transfers: Dict[str, _Transfer] = {}
        self._handlers: Dict[Type[Message], Callable[[Message], Optional[Message]]] = {
            Welcome: self._on_welcome,
            KeyRegistered: self._on_key_registered,
            TransferRequest: self._on_transfer_request,
            TransferAccepted: self._on_transfer_accepted,
            TransferRejected: self._on_transfer_rejected,
            ReceiveData: self._on_receive_data,
            ErrorMessage: self._on_error,
        }

    @property
    def ready(self) -> bool:
        return self.keyring.ready and self._published

    def register_public_key(self) -> RegisterPublicKey:
        ''' Publish the local public key; generate() must have run '''
        msg = RegisterPublicKey(self.keyring.export_public())
        self._published = True
        return msg

    def get(self, transfer_id: str) -> Optional[_Transfer]:
        with self._lock:
            return self._transfers.get(transfer_id)

    def transfers(self) -> List[_Transfer]:
        with self._lock:
            return list(self._transfers.values())

    def discard(self, transfer_id: str) -> None:
        ''' Forget a transfer locally. The peer is not told. '''
        with self._lock:
            self._transfers.pop(transfer_id, None)

    def _add(self, t: _Transfer) -> None:
        with self._lock:
            if t.transfer_id in self._transfers:
                raise OutOfOrderError(f"duplicate transfer id {t.transfer_id}")
            self._transfers[t.transfer_id] = t

    def _lookup(self, transfer_id: str, kind: Type[T], event: str) -> T:
        t = self.get(transfer_id)
        if not isinstance(t, kind):
            raise OutOfOrderError(f"{event} for unknown transfer {transfer_id}")
        return t

    # -- sender side --

    def initiate_request(self, target: str, file_name: str, payload: bytes,
                         passphrase: Optional[str] = None,
                         mime_type: Optional[str] = None) -> RequestTransfer:
        '''
        This function starts a new transfer attempt.
        Input:
            - target: party id of the recipient
            - file_name: name shown to the recipient
            - payload: file content, kept until the recipient accepts
            - passphrase: optional shared secret for the inner layer
        Output: the request-transfer message to send to the relay
        '''
        if not self.ready:
            raise NotReadyError("local public key has not been registered yet")
        if target == self.party_id:
            raise TargetUnavailableError("You cannot send a file to yourself.")
        t = SenderTransfer(uuid.uuid4().hex, target, FileMetadata.for_name(file_name, mime_type),
                           bytes(payload), passphrase)
        self._add(t)
        logger.info("Requesting transfer %s of %r to %s", t.transfer_id, t.metadata.original_name, target)
        return t.request()

    def delivered(self, transfer_id: str) -> None:
        self._lookup(transfer_id, SenderTransfer, "delivery").mark_delivered()

    # -- receiver side --

    def accept(self, transfer_id: str) -> AcceptTransfer:
        return self._lookup(transfer_id, ReceiverTransfer, "accept-transfer").accept()

    def reject(self, transfer_id: str) -> RejectTransfer:
        return self._lookup(transfer_id, ReceiverTransfer, "reject-transfer").reject()

    def open_received(self, transfer_id: str, passphrase: Optional[str] = None) -> ReceivedFile:
        t = self._lookup(transfer_id, ReceiverTransfer, "decrypt")
        data = t.open(self.keyring, passphrase)
        logger.info("Transfer %s decrypted (%d bytes)", transfer_id, len(data))
        return ReceivedFile(t.transfer_id, t.peer, t.metadata, data)

    # -- inbound dispatch --

    def handle(self, msg: Message) -> Optional[Message]:
        '''
        This function applies one inbound relay message.
        Output: the message to send back, if any (only encrypted-data)
        Raises OutOfOrderError for messages the current state does not expect.
        '''
        handler = self._handlers.get(type(msg))
        if handler is None:
            raise OutOfOrderError(f"{msg.EVENT} is not sent to parties")
        return handler(msg)

    def _on_welcome(self, msg: Welcome) -> None:
        self.party_id = msg.party_id

    def _on_key_registered(self, msg: KeyRegistered) -> None:
        logger.debug("Public key registered with relay: %s", msg.success)

    def _on_transfer_request(self, msg: TransferRequest) -> None:
        self._add(ReceiverTransfer(msg, self.max_passphrase_attempts))
        logger.info("Transfer request %s from %s: %r", msg.transfer_id, msg.source_party, msg.file_name)

    def _on_transfer_accepted(self, msg: TransferAccepted) -> EncryptedData:
        t = self._lookup(msg.transfer_id, SenderTransfer, msg.EVENT)
        out = t.on_accepted(msg, self.keyring.cipher)
        logger.info("Transfer %s encrypted as %s envelope", t.transfer_id, t.envelope_type)
        return out

    def _on_transfer_rejected(self, msg: TransferRejected) -> None:
        self._lookup(msg.transfer_id, SenderTransfer, msg.EVENT).on_rejected(msg)
        logger.info("Transfer %s rejected by %s", msg.transfer_id, msg.target_party)

    def _on_receive_data(self, msg: ReceiveData) -> None:
        self._lookup(msg.transfer_id, ReceiverTransfer, msg.EVENT).on_data(msg)

    def _on_error(self, msg: ErrorMessage) -> None:
        exc = error_from_relay(msg.code, msg.reason)
        t = self.get(msg.transfer_id) if msg.transfer_id else None
        if t is not None and t.done:
            if t.error is None:
                t.error = exc    # e.g. encrypted-data that could not be forwarded
        elif t is not None:
            t.fail(exc)
        logger.warning("Relay error (%s): %s", msg.code, msg.reason)
        raise exc
