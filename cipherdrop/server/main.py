import argparse, logging, os, socket, threading

from cipherdrop.common.errors import MalformedMessageError
from cipherdrop.common.messages import ErrorMessage, Welcome
from cipherdrop.common.protocol import JsonConnection
from cipherdrop.server.relay import Relay
from cipherdrop.server.state import SessionTable

HOST = os.environ.get("CIPHERDROP_HOST", "0.0.0.0")
PORT = int(os.environ.get("CIPHERDROP_PORT", "5050"))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


class RelayServer:
    ''' TCP front of the relay: one thread per connected party '''

    def __init__(self, host: str = HOST, port: int = PORT):
        self.table = SessionTable()
        self.relay = Relay(self.table)
        self.sock = socket.create_server((host, port))
        self.address = self.sock.getsockname()
        self.running = True

    def serve_forever(self):
        logger.debug("Relay listening on %s:%s", *self.address[:2])
        while self.running:
            try:
                conn, addr = self.sock.accept()
            except OSError:
                if not self.running:
                    break
                raise
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            threading.Thread(target=self.handle_client, args=(conn, addr), daemon=True).start()

    def close(self):
        self.running = False
        try:
            self.sock.shutdown(socket.SHUT_RDWR)   # wakes a thread blocked in accept()
        except OSError:
            pass
        self.sock.close()

    def handle_client(self, sock: socket.socket, addr):
        ''' This function serves one party from connect to disconnect '''
        conn = JsonConnection(sock)
        session = self.table.open(conn)
        sid = session.session_id
        logger.info("User connected: %s (%s)", sid, addr)
        try:
            conn.send_json(Welcome(sid).to_frame())
            while True:
                try:
                    frame = conn.recv_json()
                except MalformedMessageError as e:
                    conn.send_json(ErrorMessage(str(e), "MALFORMED").to_frame())
                    continue
                for to, out in self.relay.handle(sid, frame):
                    self.deliver(to, out)
        except (ConnectionError, OSError) as e:
            logger.debug("Connection %s ended: %s", sid, e)
        finally:
            self.table.close(sid)
            conn.close()
            logger.info("User disconnected: %s", sid)

    def deliver(self, session_id: str, frame: dict):
        s = self.table.get(session_id)
        if s is None:
            return
        try:
            s.conn.send_json(frame)
        except OSError as e:
            # the receiving thread of that session cleans it up
            logger.warning("Could not deliver %s to %s: %s", frame.get("event"), session_id, e)


def main(argv=None):
    ap = argparse.ArgumentParser(prog="cipherdrop-relay", description="Untrusted relay for cipherdrop transfers.")
    ap.add_argument("--host", default=HOST, help="Address to listen on")
    ap.add_argument("--port", type=int, default=PORT, help="Port to listen on")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    server = RelayServer(args.host, args.port)
    print(f"Server listening on {args.host}:{server.address[1]}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
