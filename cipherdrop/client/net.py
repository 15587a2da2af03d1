import logging, os, threading
from typing import Callable, Optional

from cipherdrop.common.errors import (
    DecryptionError, MalformedMessageError, TransferError, status_message,
)
from cipherdrop.common.messages import (
    ErrorMessage, ReceiveData, TransferAccepted, TransferRejected, TransferRequest, Welcome,
    parse_frame,
)
from cipherdrop.common.protocol import JsonConnection, connect
from cipherdrop.common.transfer import (
    ReceivedFile, ReceiverState, ReceiverTransfer, SenderState, SenderTransfer, TransferManager,
)

logger = logging.getLogger(__name__)


class NetClient:
    '''
    One party on the relay. Owns the keyring (through its TransferManager),
    the relay connection and the thread that receives frames.

    Callbacks run on the receive thread:
        - on_status(text): one human readable line per event
        - on_request(TransferRequest) -> bool: accept (True) or reject
        - on_file(ReceivedFile): a decrypted file
        - ask_passphrase(ReceiverTransfer) -> str | None: another try after a failed decryption
    '''

    def __init__(self, host: str, port: int,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_request: Optional[Callable[[TransferRequest], bool]] = None,
                 on_file: Optional[Callable[[ReceivedFile], None]] = None,
                 passphrase: Optional[str] = None,
                 ask_passphrase: Optional[Callable[[ReceiverTransfer], Optional[str]]] = None,
                 manager: Optional[TransferManager] = None):
        self.host, self.port = host, port
        self.on_status = on_status
        self.on_request = on_request
        self.on_file = on_file
        self.passphrase = passphrase
        self.ask_passphrase = ask_passphrase
        self.manager = manager or TransferManager()
        self.conn: Optional[JsonConnection] = None
        self.recv_thread: Optional[threading.Thread] = None
        self.running = False
        self._changed = threading.Condition()

    @property
    def party_id(self) -> Optional[str]:
        return self.manager.party_id

    def status(self, text: str):
        logger.info(text)
        if self.on_status:
            try:
                self.on_status(text)
            except Exception:
                # UI errors must not break the network thread
                logger.exception("on_status callback failed")

    def connect(self, timeout: float = 10.0):
        '''
        Connect, learn our party id, generate the session keypair and publish
        its public half. Key generation failure is fatal for the session.
        '''
        self.conn = connect(self.host, self.port, timeout=timeout)
        try:
            msg = parse_frame(self.conn.recv_json())
            if not isinstance(msg, Welcome):
                raise MalformedMessageError(f"expected welcome, got {msg.EVENT}")
            self.manager.handle(msg)
            self.status(f"Connected as {self.party_id} - Generating Keys...")
            self.manager.keyring.generate()
            self.conn.send_json(self.manager.register_public_key().to_frame())
        except (TransferError, ConnectionError, OSError) as e:
            if isinstance(e, TransferError):
                self.status(status_message(e))
            self.conn.close()
            self.conn = None
            raise
        self.running = True
        self.recv_thread = threading.Thread(target=self._recv_loop, daemon=True)
        self.recv_thread.start()
        self.status("RSA encryption keys generated successfully")

    def close(self):
        self.running = False
        if self.conn:
            self.conn.close()
        self._notify()

    def send_bytes(self, to_party: str, name: str, data: bytes,
                   passphrase: Optional[str] = None, mime_type: Optional[str] = None) -> str:
        ''' Ask to_party to accept a file; the content leaves only after acceptance '''
        msg = self.manager.initiate_request(to_party, name, data, passphrase, mime_type)
        self.conn.send_json(msg.to_frame())
        self.status(f"Requesting transfer to {to_party}...")
        return msg.transfer_id

    def send_file(self, to_party: str, path: str, passphrase: Optional[str] = None) -> str:
        with open(path, "rb") as f:
            data = f.read()
        return self.send_bytes(to_party, os.path.basename(path), data, passphrase)

    def wait_done(self, transfer_id: str, timeout: Optional[float] = None) -> bool:
        ''' Block until the transfer reached a terminal state (or the connection dropped) '''
        def finished():
            t = self.manager.get(transfer_id)
            return not self.running or (t is not None and t.done)
        with self._changed:
            self._changed.wait_for(finished, timeout)
        t = self.manager.get(transfer_id)
        return t is not None and t.done

    def _notify(self):
        with self._changed:
            self._changed.notify_all()

    def _recv_loop(self):
        try:
            while self.running:
                try:
                    frame = self.conn.recv_json()
                except MalformedMessageError as e:
                    self.status(status_message(e))
                    continue
                self._dispatch(frame)
                self._notify()
        except (ConnectionError, OSError):
            pass
        finally:
            self.running = False
            self.status("Disconnected.")
            self._notify()

    def _dispatch(self, frame: dict):
        msg = None
        try:
            msg = parse_frame(frame)
            reply = self.manager.handle(msg)
            if isinstance(msg, TransferRequest):
                self._decide(msg)
            elif isinstance(msg, TransferAccepted):
                self.status(f"Transfer accepted by {msg.target_party}. Encrypting and sending file...")
                try:
                    self.conn.send_json(reply.to_frame())
                except OSError as e:
                    self.manager.get(msg.transfer_id).fail(TransferError(f"could not send encrypted data: {e}"))
                    self.status("Error sending file: connection lost")
                    raise
                self.manager.delivered(msg.transfer_id)
                self.status("File encrypted and sent successfully")
            elif isinstance(msg, TransferRejected):
                self.status(f"Transfer rejected by {msg.target_party}")
            elif isinstance(msg, ReceiveData):
                self._open(msg)
        except TransferError as e:
            logger.warning("%s: %s", type(e).__name__, e)
            t = self.manager.get(msg.transfer_id) if isinstance(msg, ErrorMessage) and msg.transfer_id else None
            if isinstance(t, SenderTransfer) and t.state is SenderState.COMPLETE:
                self.status(f"File \"{t.metadata.original_name}\" was not delivered: {e}")
            else:
                self.status(status_message(e))

    def _decide(self, req: TransferRequest):
        accept = False
        if self.on_request:
            try:
                accept = bool(self.on_request(req))
            except Exception:
                logger.exception("on_request callback failed; rejecting %s", req.transfer_id)
        if accept:
            self.conn.send_json(self.manager.accept(req.transfer_id).to_frame())
            self.status(f"Accepting file transfer from {req.source_party}...")
        else:
            self.conn.send_json(self.manager.reject(req.transfer_id).to_frame())
            self.status(f"Rejected file transfer from {req.source_party}")

    def _open(self, msg: ReceiveData):
        t = self.manager.get(msg.transfer_id)
        passphrase = self.passphrase
        while True:
            try:
                received = self.manager.open_received(msg.transfer_id, passphrase)
                break
            except DecryptionError as e:
                self.status(status_message(e))
                if t.state is not ReceiverState.DECRYPTING or not self.ask_passphrase:
                    t.fail(e)
                    return
                try:
                    passphrase = self.ask_passphrase(t)
                except Exception:
                    logger.exception("ask_passphrase callback failed")
                    passphrase = None
                if passphrase is None:
                    t.fail(e)
                    return
        name = received.metadata.download_name()
        self.status(f"File \"{name}\" received and decrypted successfully.")
        if self.on_file:
            try:
                self.on_file(received)
            except Exception:
                logger.exception("on_file callback failed")
