import json
import socket
from threading import Lock
from typing import Optional

from cipherdrop.common.errors import MalformedMessageError

ENC = "utf-8"      # encoding for JSON text
DELIM = b"\n"      # delimiter between frames
MAX_FRAME = 64 * 1024 * 1024   # largest frame accepted, bytes


class JsonConnection:
    '''
    Newline-delimited JSON over a TCP socket. Keeps the bytes that arrive after
    a delimiter so the next recv_json() returns the following frame.
    Sends are serialized so two threads never interleave frames.
    '''

    def __init__(self, sock: socket.socket, max_frame: int = MAX_FRAME):
        self.sock = sock
        self.max_frame = max_frame
        self._buf = bytearray()
        self._send_lock = Lock()

    def send_json(self, obj: dict) -> None:
        '''
        The function sends an object that can be converted to JSON, followed by \\n.
        Input:
            - obj: dict - the object to be sent
        '''
        data = (json.dumps(obj, ensure_ascii=False) + "\n").encode(ENC)
        with self._send_lock:
            self.sock.sendall(data)

    def recv_json(self) -> dict:
        '''
        The function reads until a full line is buffered and returns it decoded.
        Raises ConnectionError when the peer closes the socket or a frame
        grows past max_frame, MalformedMessageError for non-JSON lines.
        '''
        buf = self._buf
        while True:
            nl = buf.find(DELIM)
            if nl != -1:   # one full JSON message has arrived
                line = bytes(buf[:nl])
                del buf[:nl + 1]
                try:
                    return json.loads(line.decode(ENC))
                except (UnicodeDecodeError, ValueError) as e:
                    raise MalformedMessageError("frame is not valid JSON") from e

            if len(buf) > self.max_frame:
                buf.clear()
                raise ConnectionError("frame too large")
            chunk = self.sock.recv(65536)
            if not chunk:
                raise ConnectionError("socket closed")
            buf.extend(chunk)

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass


def connect(host: str, port: int, timeout: Optional[float] = None) -> JsonConnection:
    ''' Open a TCP connection with Nagle's algorithm disabled '''
    sock = socket.create_connection((host, port), timeout=timeout)
    sock.settimeout(None)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return JsonConnection(sock)
