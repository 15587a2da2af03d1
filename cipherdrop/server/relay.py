import logging
from typing import Any, Callable, Dict, List, Tuple, Type

from cipherdrop.common.errors import MalformedMessageError
from cipherdrop.common.messages import (
    MESSAGE_TYPES, AcceptTransfer, EncryptedData, ErrorMessage, KeyRegistered, Message,
    ReceiveData, RegisterPublicKey, RejectTransfer, RequestTransfer, TransferAccepted,
    TransferRejected, TransferRequest, parse_frame,
)
from cipherdrop.server.state import SessionTable

logger = logging.getLogger(__name__)

Delivery = Tuple[str, Dict[str, Any]]   # (session id, frame)


def _error(session_id: str, reason: str, code: str, transfer_id=None) -> Delivery:
    return session_id, ErrorMessage(reason, code, transfer_id).to_frame()


class Relay:
    '''
    Routing rules of the relay. It forwards between sessions and attaches the
    registered public keys, but never looks inside encryptedData.
    handle() returns the frames to write instead of writing them, so it can be
    driven without sockets.
    '''

    def __init__(self, table: SessionTable):
        self.table = table
        self._routes: Dict[Type[Message], Callable[[str, Any], List[Delivery]]] = {
            RegisterPublicKey: self._register_public_key,
            RequestTransfer: self._request_transfer,
            AcceptTransfer: self._accept_transfer,
            RejectTransfer: self._reject_transfer,
            EncryptedData: self._encrypted_data,
        }

    def handle(self, session_id: str, frame: Any) -> List[Delivery]:
        event = frame.get("event") if isinstance(frame, dict) else None
        cls = MESSAGE_TYPES.get(event) if isinstance(event, str) else None
        if cls not in self._routes:
            logger.warning("Unknown event %r from %s", event, session_id)
            return [_error(session_id, f"Unknown event: {event}", "UNKNOWN_EVENT")]
        try:
            msg = parse_frame(frame)
        except MalformedMessageError as e:
            logger.warning("Malformed %s from %s: %s", event, session_id, e)
            return [_error(session_id, str(e), "MALFORMED")]
        return self._routes[cls](session_id, msg)

    def _register_public_key(self, sid: str, msg: RegisterPublicKey) -> List[Delivery]:
        self.table.set_public_key(sid, msg.public_key)
        logger.info("Public key registered for user: %s", sid)
        return [(sid, KeyRegistered(True).to_frame())]

    def _request_transfer(self, sid: str, msg: RequestTransfer) -> List[Delivery]:
        target = self.table.get(msg.target_party)
        sender_key = self.table.public_key(sid)
        if target is None or target.session_id == sid:
            return [_error(sid, "Target user not found", "TARGET_UNAVAILABLE", msg.transfer_id)]
        if sender_key is None:
            return [_error(sid, "Please register your public key first", "PEER_NOT_READY", msg.transfer_id)]
        logger.info("Transfer request sent from %s to %s", sid, msg.target_party)
        out = TransferRequest(msg.transfer_id, sid, msg.file_name, sender_key)
        return [(target.session_id, out.to_frame())]

    def _accept_transfer(self, sid: str, msg: AcceptTransfer) -> List[Delivery]:
        source = self.table.get(msg.source_party)
        recipient_key = self.table.public_key(sid)
        if source is None:
            return [_error(sid, "Unable to accept transfer", "TARGET_UNAVAILABLE", msg.transfer_id)]
        if recipient_key is None:
            return [_error(sid, "Unable to accept transfer", "PEER_NOT_READY", msg.transfer_id)]
        out = TransferAccepted(msg.transfer_id, sid, recipient_key)
        return [(source.session_id, out.to_frame())]

    def _reject_transfer(self, sid: str, msg: RejectTransfer) -> List[Delivery]:
        source = self.table.get(msg.source_party)
        if source is None:
            logger.info("Dropping reject for %s: %s is gone", msg.transfer_id, msg.source_party)
            return []
        return [(source.session_id, TransferRejected(msg.transfer_id, sid).to_frame())]

    def _encrypted_data(self, sid: str, msg: EncryptedData) -> List[Delivery]:
        target = self.table.get(msg.target_party)
        if target is None:
            return [_error(sid, "Target user not found", "TARGET_UNAVAILABLE", msg.transfer_id)]
        logger.info("Encrypted file data forwarded to %s: %r (%s, %s)",
                    msg.target_party, msg.original_name, msg.file_type, msg.file_extension)
        out = ReceiveData(msg.transfer_id, sid, msg.encrypted_data,
                          msg.original_name, msg.file_type, msg.file_extension)
        return [(target.session_id, out.to_frame())]
