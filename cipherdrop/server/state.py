import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional
from threading import Lock

from cipherdrop.common.protocol import JsonConnection


@dataclass
class Session:   # one connected party, lives exactly as long as its connection
    session_id: str
    conn: JsonConnection
    public_key: Optional[str] = None    # PEM text registered by the party


class SessionTable:
    # Sessions of the relay process, keyed by session id
    def __init__(self):
        self.lock = Lock()
        self.sessions: Dict[str, Session] = {}

    def open(self, conn: JsonConnection) -> Session:
        ''' This function registers a new connection under a fresh session id '''
        with self.lock:
            s = Session(session_id=uuid.uuid4().hex[:12], conn=conn)
            while s.session_id in self.sessions:
                s.session_id = uuid.uuid4().hex[:12]
            self.sessions[s.session_id] = s
            return s

    def close(self, session_id: str) -> None:
        ''' This function drops a session together with its public key record '''
        with self.lock:
            self.sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional[Session]:
        with self.lock:
            return self.sessions.get(session_id)

    def set_public_key(self, session_id: str, pem: str) -> bool:
        with self.lock:
            s = self.sessions.get(session_id)
            if s is None:
                return False
            s.public_key = pem
            return True

    def public_key(self, session_id: str) -> Optional[str]:
        with self.lock:
            s = self.sessions.get(session_id)
            return s.public_key if s else None

    def ids(self) -> List[str]:
        with self.lock:
            return list(self.sessions.keys())
