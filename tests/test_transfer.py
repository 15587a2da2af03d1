from __future__ import annotations

import os

import pytest

from cipherdrop.common.crypto import HybridCipher, Keyring
from cipherdrop.common.envelope import envelope_from_json, envelope_to_json
from cipherdrop.common.errors import (
    DECRYPTION_FAILED, DecryptionError, KeyImportError, NotReadyError, OutOfOrderError,
    TargetUnavailableError,
)
from cipherdrop.common.messages import (
    ErrorMessage, FileMetadata, ReceiveData, TransferAccepted, TransferRequest,
)
from cipherdrop.common.transfer import (
    ReceiverState, ReceiverTransfer, SenderState, SenderTransfer, TransferManager,
)


def party(network, keyring=None):
    if keyring is None:
        keyring = Keyring()
    if not keyring.ready:
        keyring.generate()
    m = network.join(TransferManager(keyring))
    network.send(m, m.register_public_key())
    network.pump()
    return m


def request(network, sender, receiver, payload, name="report.pdf", passphrase=None):
    msg = sender.initiate_request(receiver.party_id, name, payload, passphrase)
    network.send(sender, msg)
    network.pump()
    return msg.transfer_id


def test_scenario_small_file_uses_rsa(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    payload = os.urandom(50)

    tid = request(network, b, a, payload)
    incoming = a.get(tid)
    assert incoming.state is ReceiverState.REQUEST_RECEIVED
    assert incoming.peer == b.party_id
    assert incoming.file_name == "report.pdf"
    assert incoming.sender_public_key == b.keyring.export_public()

    network.send(a, a.accept(tid))
    network.pump()

    outgoing = b.get(tid)
    assert outgoing.envelope_type == "rsa"
    assert outgoing.state is SenderState.COMPLETE
    assert outgoing.history == [SenderState.IDLE, SenderState.REQUEST_SENT, SenderState.ACCEPTED,
                                SenderState.ENCRYPTING, SenderState.SENT, SenderState.COMPLETE]
    assert incoming.state is ReceiverState.DECRYPTING

    received = a.open_received(tid)
    assert received.data == payload
    assert received.source_party == b.party_id
    assert received.metadata == FileMetadata("report.pdf", "application/pdf", "pdf")
    assert incoming.history == [ReceiverState.IDLE, ReceiverState.REQUEST_RECEIVED, ReceiverState.ACCEPT_SENT,
                                ReceiverState.AWAITING_DATA, ReceiverState.DECRYPTING, ReceiverState.COMPLETE]
    assert network.errors == []


def test_scenario_large_file_uses_hybrid(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    payload = os.urandom(2_000_000)

    tid = request(network, b, a, payload, name="big.bin")
    network.send(a, a.accept(tid))
    network.pump()

    assert b.get(tid).envelope_type == "hybrid"
    assert a.open_received(tid).data == payload


def test_scenario_reject_never_encrypts(network, keyring, counting_cipher):
    a = party(network, keyring)
    b = party(network, Keyring(cipher=counting_cipher))

    tid = request(network, b, a, b"secret")
    network.send(a, a.reject(tid))
    network.pump()

    assert b.get(tid).state is SenderState.REJECTED
    assert a.get(tid).state is ReceiverState.REJECT_SENT
    assert counting_cipher.encrypt_calls == 0


def test_scenario_wrong_then_correct_passphrase(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    payload = os.urandom(4096)

    tid = request(network, b, a, payload, passphrase="correct-horse")
    network.send(a, a.accept(tid))
    network.pump()

    with pytest.raises(DecryptionError):
        a.open_received(tid, "wrong-horse")
    assert a.get(tid).state is ReceiverState.DECRYPTING

    assert a.open_received(tid, "correct-horse").data == payload
    assert a.get(tid).state is ReceiverState.COMPLETE


def test_passphrase_attempts_are_bounded(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    tid = request(network, b, a, b"tiny", passphrase="pw")
    network.send(a, a.accept(tid))
    network.pump()

    for _ in range(a.max_passphrase_attempts):
        with pytest.raises(DecryptionError):
            a.open_received(tid, "nope")
    assert a.get(tid).state is ReceiverState.FAILED
    with pytest.raises(OutOfOrderError):
        a.open_received(tid, "pw")


def test_request_before_registration_is_not_ready(network, keyring):
    m = network.join(TransferManager(keyring))
    with pytest.raises(NotReadyError):
        m.initiate_request("someone", "a.txt", b"x")
    assert m.transfers() == []


def test_request_to_unknown_party_errors_the_transfer(network, keyring):
    b = party(network, keyring)
    msg = b.initiate_request("ghost", "a.txt", b"x")
    network.send(b, msg)
    network.pump()

    t = b.get(msg.transfer_id)
    assert t.state is SenderState.ERRORED
    assert isinstance(t.error, TargetUnavailableError)
    assert [type(e) for _, e in network.errors] == [TargetUnavailableError]


def test_replayed_envelope_after_completion_is_refused(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    tid = request(network, b, a, b"payload")
    network.send(a, a.accept(tid))
    network.pump()
    a.open_received(tid)

    replay = ReceiveData(tid, b.party_id, "{}", "x", "text/plain", "")
    with pytest.raises(OutOfOrderError):
        a.handle(replay)
    with pytest.raises(OutOfOrderError):
        b.handle(TransferAccepted(tid, a.party_id, a.keyring.export_public()))
    assert a.get(tid).state is ReceiverState.COMPLETE


def test_envelope_for_unknown_transfer_is_refused(keyring):
    m = TransferManager(keyring)
    with pytest.raises(OutOfOrderError):
        m.handle(ReceiveData("nope", "bob", "{}", "x", "text/plain", ""))


def test_duplicate_transfer_request_is_refused(keyring):
    m = TransferManager(keyring)
    req = TransferRequest("t1", "bob", "a.txt", keyring.export_public())
    m.handle(req)
    with pytest.raises(OutOfOrderError):
        m.handle(req)


# -- single transfer objects --

def _receiver(keyring, transfer_id="t1", source="bob"):
    return ReceiverTransfer(TransferRequest(transfer_id, source, "a.txt", keyring.export_public()))


def _data_for(keyring, payload=b"hello", source="bob", transfer_id="t1", passphrase=None):
    env = HybridCipher().encrypt(payload, Keyring.import_public(keyring.export_public()), passphrase)
    return ReceiveData(transfer_id, source, envelope_to_json(env), "a.txt", "text/plain", "txt")


def test_envelope_before_accept_is_out_of_order(keyring):
    t = _receiver(keyring)
    before = list(t.history)
    with pytest.raises(OutOfOrderError):
        t.on_data(_data_for(keyring))
    assert t.state is ReceiverState.REQUEST_RECEIVED
    assert t.history == before


def test_envelope_from_other_party_is_out_of_order(keyring):
    t = _receiver(keyring)
    t.accept()
    with pytest.raises(OutOfOrderError):
        t.on_data(_data_for(keyring, source="mallory"))
    assert t.state is ReceiverState.AWAITING_DATA


def test_second_envelope_is_out_of_order(keyring):
    t = _receiver(keyring)
    t.accept()
    t.on_data(_data_for(keyring, b"first"))
    with pytest.raises(OutOfOrderError):
        t.on_data(_data_for(keyring, b"second"))
    assert t.open(keyring) == b"first"


def test_undecodable_envelope_fails_like_corruption(keyring):
    t = _receiver(keyring)
    t.accept()
    bad = ReceiveData("t1", "bob", "{not json", "a.txt", "text/plain", "txt")
    with pytest.raises(DecryptionError) as err:
        t.on_data(bad)
    assert t.state is ReceiverState.FAILED
    assert str(err.value) == DECRYPTION_FAILED


def test_wrong_key_fails_without_retry(keyring, other_keyring):
    t = _receiver(keyring)
    t.accept()
    t.on_data(_data_for(other_keyring))
    with pytest.raises(DecryptionError):
        t.open(keyring)
    assert t.state is ReceiverState.FAILED
    assert isinstance(t.error, DecryptionError)


def test_terminal_states_accept_nothing(keyring):
    t = _receiver(keyring)
    t.reject()
    with pytest.raises(OutOfOrderError):
        t.accept()
    with pytest.raises(OutOfOrderError):
        t.reject()
    assert t.done


def test_sender_with_bad_recipient_key_errors(cipher):
    t = SenderTransfer("t1", "alice", FileMetadata.for_name("a.txt"), b"data")
    t.request()
    with pytest.raises(KeyImportError):
        t.on_accepted(TransferAccepted("t1", "alice", "garbage"), cipher)
    assert t.state is SenderState.ERRORED
    assert t.history[-2:] == [SenderState.ACCEPTED, SenderState.ERRORED]


def test_sender_ignores_accept_from_other_party(keyring, cipher):
    t = SenderTransfer("t1", "alice", FileMetadata.for_name("a.txt"), b"data")
    t.request()
    with pytest.raises(OutOfOrderError):
        t.on_accepted(TransferAccepted("t1", "mallory", keyring.export_public()), cipher)
    assert t.state is SenderState.REQUEST_SENT


def test_sender_not_sent_until_envelope_exists(keyring, cipher):
    t = SenderTransfer("t1", "alice", FileMetadata.for_name("a.txt"), b"data")
    t.request()
    out = t.on_accepted(TransferAccepted("t1", "alice", keyring.export_public()), cipher)
    assert t.state is SenderState.SENT
    assert keyring.open_envelope(envelope_from_json(out.encrypted_data)) == b"data"
    t.mark_delivered()
    assert t.state is SenderState.COMPLETE
    with pytest.raises(OutOfOrderError):
        t.mark_delivered()


def test_send_to_self_is_refused(network, keyring):
    m = party(network, keyring)
    with pytest.raises(TargetUnavailableError):
        m.initiate_request(m.party_id, "a.txt", b"x")
    assert m.transfers() == []


def test_relay_error_after_completion_is_recorded(network, keyring, other_keyring):
    a = party(network, keyring)
    b = party(network, other_keyring)
    tid = request(network, b, a, b"payload")
    network.send(a, a.accept(tid))
    network.pump()
    assert b.get(tid).state is SenderState.COMPLETE

    with pytest.raises(TargetUnavailableError):
        b.handle(ErrorMessage("Target user not found", "TARGET_UNAVAILABLE", tid))
    t = b.get(tid)
    assert t.state is SenderState.COMPLETE
    assert isinstance(t.error, TargetUnavailableError)
