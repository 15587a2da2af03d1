"""
Command line client for cipherdrop.

`receive` connects, prints the party id to give to senders and saves every
accepted file; `send` offers one file to a party and waits for the outcome.
"""
import argparse, datetime, getpass, logging, os, sys

from cipherdrop.common.errors import TransferError
from cipherdrop.common.transfer import SenderState
from .net import NetClient

HOST = os.environ.get("CIPHERDROP_HOST", "127.0.0.1")
PORT = int(os.environ.get("CIPHERDROP_PORT", "5050"))
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def print_status(text: str):
    print(f"{datetime.datetime.now():%H:%M:%S}: {text}", flush=True)


def unique_path(out_dir: str, name: str) -> str:
    ''' Path inside out_dir for name, adding " (n)" before the extension if taken '''
    root, ext = os.path.splitext(name)
    path = os.path.join(out_dir, name)
    n = 1
    while os.path.exists(path):
        path = os.path.join(out_dir, f"{root} ({n}){ext}")
        n += 1
    return path


def cmd_receive(args) -> int:
    os.makedirs(args.out_dir, exist_ok=True)

    def on_request(req):
        if args.yes:
            return True
        answer = input(f"User {req.source_party} wants to send you file: {req.file_name}. Accept? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    def on_file(received):
        path = unique_path(args.out_dir, received.metadata.download_name())
        with open(path, "wb") as f:
            f.write(received.data)
        print_status(f"Saved {path} ({len(received.data)} bytes, {received.metadata.mime_type})")

    def ask_passphrase(transfer):
        if not sys.stdin.isatty():
            return None
        return getpass.getpass(f"Passphrase for transfer from {transfer.peer}: ") or None

    net = NetClient(args.host, args.port, on_status=print_status, on_request=on_request,
                    on_file=on_file, passphrase=args.passphrase, ask_passphrase=ask_passphrase)
    try:
        net.connect()
    except (TransferError, OSError) as e:
        print(f"Could not connect: {e}", file=sys.stderr)
        return 1
    print(f"Your party id: {net.party_id}")
    try:
        net.recv_thread.join()
    except KeyboardInterrupt:
        pass
    finally:
        net.close()
    return 0


def cmd_send(args) -> int:
    net = NetClient(args.host, args.port, on_status=print_status)
    try:
        net.connect()
        transfer_id = net.send_file(args.to, args.file, args.passphrase)
    except (TransferError, OSError) as e:
        print(f"Could not send: {e}", file=sys.stderr)
        net.close()
        return 1
    try:
        net.wait_done(transfer_id, timeout=args.timeout)
    except KeyboardInterrupt:
        pass
    finally:
        net.close()
    t = net.manager.get(transfer_id)
    return 0 if t is not None and t.state is SenderState.COMPLETE else 1


def main(argv=None):
    ap = argparse.ArgumentParser(prog="cipherdrop", description="End-to-end encrypted file transfer over a relay.")
    ap.add_argument("--host", default=HOST, help="Relay host address")
    ap.add_argument("--port", type=int, default=PORT, help="Relay port")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    recv = sub.add_parser("receive", help="Wait for incoming files")
    recv.add_argument("--out-dir", default=".", help="Directory for received files")
    recv.add_argument("--yes", action="store_true", help="Accept every request without asking")
    recv.add_argument("--passphrase", default=None, help="Shared passphrase for protected files")
    recv.set_defaults(func=cmd_receive)

    send = sub.add_parser("send", help="Send one file")
    send.add_argument("--to", required=True, help="Party id of the recipient")
    send.add_argument("--file", required=True, help="File to send")
    send.add_argument("--passphrase", default=None, help="Protect the file with a shared passphrase")
    send.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for the recipient")
    send.set_defaults(func=cmd_send)

    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
