import mimetypes, os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Type

from cipherdrop.common.errors import MalformedMessageError

# Frames on the relay are {"event": <name>, "data": {...}}. Only the routing
# fields and FileMetadata are plaintext; file content is always inside
# encryptedData.

DEFAULT_MIME = "application/octet-stream"


@dataclass(frozen=True)
class FileMetadata:
    original_name: str
    mime_type: str
    extension: str

    @classmethod
    def for_name(cls, name: str, mime_type: Optional[str] = None) -> "FileMetadata":
        ''' Build metadata from a file name; MIME type guessed from the extension '''
        base = os.path.basename(name)
        ext = file_extension(base)
        if not mime_type:
            mime_type = mimetypes.guess_type(base)[0] or DEFAULT_MIME
        return cls(original_name=base, mime_type=mime_type, extension=ext)

    def download_name(self) -> str:
        ''' Name to save a received file under; never contains a directory part '''
        name = os.path.basename((self.original_name or "").replace("\\", "/"))
        if name in ("", ".", ".."):
            name = f"received_file.{self.extension}" if self.extension else "received_file"
        return name


def file_extension(name: str) -> str:
    ''' Text after the last dot, "" for names without one or dot files like ".bashrc" '''
    dot = name.rfind(".")
    if dot <= 0:
        return ""
    return name[dot + 1:]


class Message:
    '''
    Base for relay messages. Subclasses are dataclasses whose fields map 1:1
    to camelCase wire names through WIRE.
    '''
    EVENT = ""
    WIRE: Dict[str, str] = {}
    OPTIONAL: tuple = ()

    def to_frame(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name in self.OPTIONAL:
                continue
            data[self.WIRE.get(f.name, f.name)] = value
        return {"event": self.EVENT, "data": data}

    @classmethod
    def from_data(cls, data: Any):
        '''
        This function validates a frame's data object and builds the message.
        Required fields must be present and be strings; a bool field must be a bool.
        Raises MalformedMessageError otherwise.
        '''
        if not isinstance(data, dict):
            raise MalformedMessageError(f"{cls.EVENT}: data must be an object")
        kwargs = {}
        for f in fields(cls):
            wire = cls.WIRE.get(f.name, f.name)
            value = data.get(wire)
            if value is None:
                if f.name in cls.OPTIONAL:
                    kwargs[f.name] = None
                    continue
                raise MalformedMessageError(f"{cls.EVENT}: missing field {wire!r}")
            expected = bool if f.type in (bool, "bool") else str
            if not isinstance(value, expected):
                raise MalformedMessageError(f"{cls.EVENT}: field {wire!r} must be {expected.__name__}")
            kwargs[f.name] = value
        return cls(**kwargs)


_FILE_WIRE = {"original_name": "originalName", "file_type": "fileType",
              "file_extension": "fileExtension"}


@dataclass(frozen=True)
class Welcome(Message):
    party_id: str
    EVENT = "welcome"
    WIRE = {"party_id": "partyId"}


@dataclass(frozen=True)
class RegisterPublicKey(Message):
    public_key: str
    EVENT = "register-public-key"
    WIRE = {"public_key": "publicKey"}


@dataclass(frozen=True)
class KeyRegistered(Message):
    success: bool
    EVENT = "key-registered"


@dataclass(frozen=True)
class RequestTransfer(Message):
    transfer_id: str
    target_party: str
    file_name: str
    EVENT = "request-transfer"
    WIRE = {"transfer_id": "transferId", "target_party": "targetParty", "file_name": "fileName"}


@dataclass(frozen=True)
class TransferRequest(Message):
    transfer_id: str
    source_party: str
    file_name: str
    sender_public_key: str
    EVENT = "transfer-request"
    WIRE = {"transfer_id": "transferId", "source_party": "sourceParty",
            "file_name": "fileName", "sender_public_key": "senderPublicKey"}


@dataclass(frozen=True)
class AcceptTransfer(Message):
    transfer_id: str
    source_party: str
    EVENT = "accept-transfer"
    WIRE = {"transfer_id": "transferId", "source_party": "sourceParty"}


@dataclass(frozen=True)
class TransferAccepted(Message):
    transfer_id: str
    target_party: str
    recipient_public_key: str
    EVENT = "transfer-accepted"
    WIRE = {"transfer_id": "transferId", "target_party": "targetParty",
            "recipient_public_key": "recipientPublicKey"}


@dataclass(frozen=True)
class RejectTransfer(Message):
    transfer_id: str
    source_party: str
    EVENT = "reject-transfer"
    WIRE = {"transfer_id": "transferId", "source_party": "sourceParty"}


@dataclass(frozen=True)
class TransferRejected(Message):
    transfer_id: str
    target_party: str
    EVENT = "transfer-rejected"
    WIRE = {"transfer_id": "transferId", "target_party": "targetParty"}


@dataclass(frozen=True)
class EncryptedData(Message):
    transfer_id: str
    target_party: str
    encrypted_data: str     # envelope JSON text
    original_name: str
    file_type: str
    file_extension: str
    EVENT = "encrypted-data"
    WIRE = {"transfer_id": "transferId", "target_party": "targetParty",
            "encrypted_data": "encryptedData", **_FILE_WIRE}


@dataclass(frozen=True)
class ReceiveData(Message):
    transfer_id: str
    source_party: str
    encrypted_data: str
    original_name: str
    file_type: str
    file_extension: str
    EVENT = "receive-data"
    WIRE = {"transfer_id": "transferId", "source_party": "sourceParty",
            "encrypted_data": "encryptedData", **_FILE_WIRE}

    @property
    def metadata(self) -> FileMetadata:
        return FileMetadata(self.original_name, self.file_type, self.file_extension)


@dataclass(frozen=True)
class ErrorMessage(Message):
    reason: str
    code: Optional[str] = None
    transfer_id: Optional[str] = None
    EVENT = "error"
    WIRE = {"transfer_id": "transferId"}
    OPTIONAL = ("code", "transfer_id")


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.EVENT: cls for cls in (
        Welcome, RegisterPublicKey, KeyRegistered, RequestTransfer, TransferRequest,
        AcceptTransfer, TransferAccepted, RejectTransfer, TransferRejected,
        EncryptedData, ReceiveData, ErrorMessage,
    )
}


def parse_frame(frame: Any) -> Message:
    '''
    This function turns a decoded JSON frame into its message object.
    Input: {"event": name, "data": {...}}
    Output: the Message subclass instance for that event
    '''
    if not isinstance(frame, dict):
        raise MalformedMessageError("frame must be a JSON object")
    event = frame.get("event")
    cls = MESSAGE_TYPES.get(event) if isinstance(event, str) else None
    if cls is None:
        raise MalformedMessageError(f"unknown event: {event!r}")
    return cls.from_data(frame.get("data"))
