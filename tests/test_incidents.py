import sqlite3
import threading

import pytest

from suraksha.errors import ForbiddenError, InputError, InternalError, InvalidTokenError, NotFoundError
from suraksha.incidents import DECRYPTION_FAILED_MARKER, IncidentStatus, IncidentStore
from suraksha.tokens import StaticSigningKeyProvider, TokenIssuer

from conftest import NOW, OTHER_PHONE, PHONE, registration


@pytest.fixture
def store(db, crypto, key_store):
    return IncidentStore(db, crypto, key_store)


@pytest.fixture
def reader(store, issuer, officer_token):
    return store.reader(issuer, officer_token)


def alert(message="help", **extra):
    payload = {"message": message, "latitude": 1.0, "longitude": 2.0}
    payload.update(extra)
    return payload


def test_submit_encrypts_message(store, citizen, db, reader):
    incident = store.submit(PHONE, alert(), owner_name="Asha Rao", now=NOW)
    assert incident.status == "active"
    assert incident.is_encrypted is True
    assert incident.message is None
    assert incident.urgency == "critical"

    row = db.connection().execute("SELECT * FROM incidents WHERE owner_phone=?", (PHONE,)).fetchone()
    assert row["message"] is None
    assert row["ciphertext"] and row["wrapped_key"] and row["iv"]

    assert store.get(PHONE, reader).message == "help"


def test_single_active_invariant(store, citizen, reader):
    first = store.submit(PHONE, alert("first"), now=NOW)
    store.update_status(PHONE, "responding", now=NOW + 5)
    second = store.submit(PHONE, alert("second", latitude=5.5, urgency="high"), now=NOW + 10)

    active = [i for i in store.list_active(reader) if i.owner_phone == PHONE]
    assert len(active) == 1
    assert active[0].message == "second"
    assert active[0].latitude == 5.5
    assert active[0].urgency == "high"
    assert active[0].status == "active"
    # The live alert keeps its identity and creation time across replacement
    assert second.incident_id == first.incident_id
    assert second.created_at == NOW
    assert second.updated_at == NOW + 10


def test_soft_fail_to_plaintext_without_key(store, caplog):
    # No registered identity means no public key on record
    incident = store.submit(OTHER_PHONE, alert("unencrypted help"), now=NOW)
    assert incident.is_encrypted is False
    assert incident.message == "unencrypted help"
    assert incident.envelope is None
    assert "without encryption" in caplog.text


def test_soft_fail_on_encryption_error(store, citizen, monkeypatch):
    def broken(plaintext, public_key_pem):
        raise InputError("public_key", "not a valid PEM public key")

    monkeypatch.setattr(store.crypto, "encrypt", broken)
    incident = store.submit(PHONE, alert(), now=NOW)
    assert incident.is_encrypted is False
    assert incident.message == "help"


def test_update_status(store, citizen):
    assert store.update_status(PHONE, "responding") is False
    store.submit(PHONE, alert(), now=NOW)
    assert store.mark_responding(PHONE, now=NOW + 1) is True
    assert store.get(PHONE).status == "responding"
    assert store.update_status(PHONE, IncidentStatus.ACTIVE) is True


@pytest.mark.parametrize("status", ["resolved", "closed", "", None])
def test_update_status_rejects_other_values(store, citizen, status):
    store.submit(PHONE, alert(), now=NOW)
    with pytest.raises(InputError):
        store.update_status(PHONE, status)


def test_resolve_atomic_move(store, citizen, reader, db):
    store.submit(PHONE, alert(), now=NOW)
    assert store.resolve(PHONE, "officer42", "dispatched unit", now=NOW + 600) is True

    assert store.get(PHONE) is None
    assert store.list_all(reader) == []
    history = store.history(reader=reader)
    assert len(history) == 1
    entry = history[0]
    assert entry.status == "resolved"
    assert entry.resolved_by == "officer42"
    assert entry.resolved_notes == "dispatched unit"
    assert entry.created_at == NOW
    assert entry.resolved_at == NOW + 600
    assert entry.message == "help"


def test_resolve_missing_leaves_history_untouched(store):
    with pytest.raises(NotFoundError):
        store.resolve(PHONE, "officer42", "nothing there")
    assert store.history() == []


def test_resolve_failure_mid_sequence_rolls_back(store, citizen, db):
    store.submit(PHONE, alert(), now=NOW)
    incident_id = store.get(PHONE).incident_id
    # Pre-existing archive row with the same incident id makes the insert fail
    db.connection().execute(
        "INSERT INTO incident_history(incident_id, owner_phone, message, latitude, longitude, urgency, "
        "resolved_by, created_at, resolved_at) VALUES(?,?,?,?,?,?,?,?,?)",
        (incident_id, PHONE, "x", 0.0, 0.0, "low", "someone", NOW, NOW)
    )
    with pytest.raises(InternalError) as exc:
        store.resolve(PHONE, "officer42", "dup")
    assert isinstance(exc.value.__cause__, sqlite3.IntegrityError)
    assert exc.value.to_dict()["error"] == "INTERNAL_ERROR"
    assert store.get(PHONE) is not None
    assert len(store.history()) == 1


def test_concurrent_resolve_archives_once(store, citizen):
    store.submit(PHONE, alert(), now=NOW)
    outcomes = []

    def worker():
        try:
            outcomes.append(store.resolve(PHONE, "officer42", "race"))
        except NotFoundError:
            outcomes.append("missing")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(True) == 1
    assert outcomes.count("missing") == 3
    assert len(store.history()) == 1


def test_list_active_excludes_responding(store, registry, reader):
    registry.register(registration(), now=NOW)
    registry.register(registration(phone=OTHER_PHONE, name="Ravi"), now=NOW)
    store.submit(PHONE, alert("one"), now=NOW)
    store.submit(OTHER_PHONE, alert("two"), now=NOW + 1)
    store.mark_responding(OTHER_PHONE)

    assert [i.owner_phone for i in store.list_active(reader)] == [PHONE]
    assert {i.owner_phone for i in store.list_all(reader)} == {PHONE, OTHER_PHONE}


def test_per_record_decryption_degradation(store, registry, reader, db):
    registry.register(registration(), now=NOW)
    registry.register(registration(phone=OTHER_PHONE, name="Ravi"), now=NOW)
    store.submit(PHONE, alert("intact"), now=NOW)
    store.submit(OTHER_PHONE, alert("damaged"), now=NOW + 1)
    db.connection().execute(
        "UPDATE incidents SET ciphertext='AAAAAAAAAAAAAAAAAAAAAA==' WHERE owner_phone=?", (OTHER_PHONE,)
    )

    by_owner = {i.owner_phone: i for i in store.list_all(reader)}
    assert by_owner[PHONE].message == "intact"
    assert by_owner[PHONE].decryption_failed is False
    assert by_owner[OTHER_PHONE].message == DECRYPTION_FAILED_MARKER
    assert by_owner[OTHER_PHONE].decryption_failed is True


def test_reader_requires_responder(store, issuer, citizen_token):
    with pytest.raises(ForbiddenError):
        store.reader(issuer, citizen_token)


def test_reader_rejects_unsigned_responder_claims(store, issuer, officer_claims):
    # Claims minted under a foreign key never unlock private keys
    forged = TokenIssuer(StaticSigningKeyProvider()).issue(officer_claims, 3600)
    with pytest.raises(InvalidTokenError):
        store.reader(issuer, forged)
    with pytest.raises(InvalidTokenError):
        store.reader(issuer, "not-a-token")


def test_history_limit(store, citizen):
    for i in range(3):
        store.submit(PHONE, alert(f"alert {i}"), now=NOW + i * 10)
        store.resolve(PHONE, "officer42", None, now=NOW + i * 10 + 5)
    history = store.history(limit=2)
    assert [h.resolved_at for h in history] == [NOW + 25, NOW + 15]
    with pytest.raises(InputError):
        store.history(limit=0)


def test_stats(store, registry):
    registry.register(registration(), now=NOW)
    registry.register(registration(phone=OTHER_PHONE, name="Ravi"), now=NOW)
    store.submit(PHONE, alert(), now=NOW)
    store.submit(OTHER_PHONE, alert(), now=NOW)
    store.mark_responding(OTHER_PHONE)
    store.resolve(OTHER_PHONE, "officer42", None, now=NOW - 86400)

    store.submit(OTHER_PHONE, alert(), now=NOW)
    store.resolve(OTHER_PHONE, "officer42", None, now=NOW)

    assert store.stats(now=NOW) == {
        "active": 1,
        "responding": 0,
        "resolved_today": 1,
        "total_resolved": 2,
    }


# End-to-end: register, submit, respond, resolve
def test_end_to_end_scenario(registry, store, reader, key_store):
    identity = registry.register(registration(phone="+1234567890"), now=NOW)
    assert key_store.has_keys(identity.phone_number)

    incident = store.submit(identity.phone_number, {"message": "help", "latitude": 1.0, "longitude": 2.0}, now=NOW)
    assert incident.status == "active"

    assert store.update_status(identity.phone_number, "responding") is True
    assert store.get(identity.phone_number).status == "responding"

    assert store.resolve(identity.phone_number, "officer42", "dispatched unit") is True
    assert store.get(identity.phone_number) is None
    history = store.history(reader=reader)
    assert len(history) == 1
    assert history[0].status == "resolved"
    assert history[0].resolved_by == "officer42"
    assert history[0].resolved_notes == "dispatched unit"
