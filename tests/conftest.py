from __future__ import annotations

import json

import pytest

from cipherdrop.common.crypto import HybridCipher, Keyring
from cipherdrop.common.errors import TransferError
from cipherdrop.common.messages import EncryptedData, Welcome, parse_frame
from cipherdrop.server.relay import Relay
from cipherdrop.server.state import SessionTable


class CountingCipher(HybridCipher):
    def __init__(self):
        self.encrypt_calls = 0
        self.decrypt_calls = 0

    def encrypt(self, *args, **kwargs):
        self.encrypt_calls += 1
        return super().encrypt(*args, **kwargs)

    def decrypt(self, *args, **kwargs):
        self.decrypt_calls += 1
        return super().decrypt(*args, **kwargs)


# RSA generation is the slow part of the suite; share keys across tests.
@pytest.fixture(scope="session")
def keyring() -> Keyring:
    k = Keyring()
    k.generate()
    return k


@pytest.fixture(scope="session")
def other_keyring() -> Keyring:
    k = Keyring()
    k.generate()
    return k


@pytest.fixture(scope="session")
def recipient(keyring):
    return Keyring.import_public(keyring.export_public())


@pytest.fixture
def cipher() -> HybridCipher:
    return HybridCipher()


@pytest.fixture
def counting_cipher() -> CountingCipher:
    return CountingCipher()


class LoopbackNetwork:
    '''
    Parties wired to a real Relay without sockets. Frames go through JSON text
    and are queued, so a test can look at state between steps with pump().
    '''

    def __init__(self):
        self.table = SessionTable()
        self.relay = Relay(self.table)
        self.parties = {}
        self.queue = []
        self.errors = []

    def join(self, manager):
        session = self.table.open(conn=None)
        self.parties[session.session_id] = manager
        manager.handle(Welcome(session.session_id))
        return manager

    def send(self, manager, msg):
        frame = json.loads(json.dumps(msg.to_frame()))
        self.queue.extend(self.relay.handle(manager.party_id, frame))

    def pump(self):
        while self.queue:
            sid, frame = self.queue.pop(0)
            manager = self.parties[sid]
            try:
                reply = manager.handle(parse_frame(json.loads(json.dumps(frame))))
            except TransferError as e:
                self.errors.append((sid, e))
                continue
            if isinstance(reply, EncryptedData):
                self.send(manager, reply)
                manager.delivered(reply.transfer_id)


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()
