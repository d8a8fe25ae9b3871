import pytest

from suraksha.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InputError,
    InvalidTokenError,
    MismatchError,
    NotFoundError,
    TransitionError,
)

from conftest import OTHER_PHONE, PASSWORD, PHONE, registration, responder_account


@pytest.fixture
def session(service):
    service.register(registration())
    issue = service.request_otp({"phoneNumber": PHONE})
    return service.login({"phoneNumber": PHONE, "otp": issue.code})


@pytest.fixture
def officer_token(service):
    service.responders.create(responder_account())
    return service.responder_login({"username": "officer42", "password": PASSWORD}).token


@pytest.fixture
def admin_token(service):
    service.responders.create(responder_account("admin1", "Duty Admin", "admin"))
    return service.responder_login({"username": "admin1", "password": PASSWORD}).token


def test_login_issues_citizen_token(service, session, key_pair):
    assert session.claims.role == "citizen"
    assert session.claims.phone == PHONE
    assert session.claims.verified is True
    assert session.claims.key_fingerprint == key_pair.fingerprint
    assert session.claims.expires_at - session.claims.issued_at in (86400, 86401)
    assert session.identity.is_verified is True
    assert "private_key" not in session.to_dict()["user"]


def test_register_twice_conflicts(service, session):
    with pytest.raises(ConflictError):
        service.register(registration())


def test_request_otp_requires_registration(service):
    with pytest.raises(NotFoundError):
        service.request_otp({"phoneNumber": OTHER_PHONE})


def test_login_with_wrong_code(service):
    service.register(registration())
    issue = service.request_otp({"phoneNumber": PHONE})
    bad = "000000" if issue.code != "000000" else "111111"
    with pytest.raises(MismatchError) as exc:
        service.login({"phoneNumber": PHONE, "otp": bad})
    assert exc.value.to_dict() == {
        "error": "OTP_MISMATCH",
        "message": "Invalid OTP, 2 attempts remaining",
        "remaining_attempts": 2,
    }


def test_login_payload_validation(service):
    with pytest.raises(InputError) as exc:
        service.login({"phoneNumber": PHONE})
    assert exc.value.field == "otp"


def test_authenticate_header(service, session):
    claims = service.authenticate(f"Bearer {session.token}")
    assert claims.subject == PHONE
    with pytest.raises(InvalidTokenError):
        service.authenticate(session.token)


def test_citizen_alert_flow(service, session, officer_token):
    service.submit_alert(session.token, {"message": "help", "latitude": 1.0, "longitude": 2.0})
    mine = service.my_alert(session.token)
    assert mine.status == "active"
    assert mine.owner_name == "Asha Rao"
    # Citizens never get the decrypted text back through their own token
    assert mine.message is None and mine.is_encrypted

    active = service.active_alerts(officer_token)
    assert [a.message for a in active] == ["help"]

    assert service.update_alert_status(officer_token, PHONE, "responding") is True
    assert service.all_alerts(officer_token)[0].status == "responding"

    assert service.resolve_alert(f"Bearer {officer_token}", PHONE, "dispatched unit") is True
    assert service.my_alert(session.token) is None
    history = service.alert_history(officer_token)
    assert history[0].resolved_by == "officer42"
    assert history[0].message == "help"
    assert service.alert_stats(officer_token)["total_resolved"] == 1


def test_citizen_cannot_read_responder_views(service, session):
    with pytest.raises(ForbiddenError):
        service.active_alerts(session.token)
    with pytest.raises(ForbiddenError):
        service.complaints_list(session.token)
    with pytest.raises(ForbiddenError):
        service.resolve_alert(session.token, PHONE)


def test_responder_cannot_use_citizen_operations(service, officer_token):
    with pytest.raises(ForbiddenError):
        service.submit_alert(officer_token, {"message": "x", "latitude": 0, "longitude": 0})


def test_update_missing_alert_is_not_found(service, officer_token):
    with pytest.raises(NotFoundError):
        service.update_alert_status(officer_token, PHONE, "responding")
    with pytest.raises(NotFoundError):
        service.resolve_alert(officer_token, PHONE)


def test_complaint_flow(service, session, officer_token):
    filed = service.file_complaint(session.token, {
        "category": "theft", "subject": "Phone snatched", "description": "Near the station at 9pm",
    })
    assert [c.id for c in service.my_complaints(session.token)] == [filed.id]

    listed = service.complaints_list(officer_token, status="pending")
    assert listed[0].description == "Near the station at 9pm"

    c = service.assign_complaint(officer_token, filed.id)
    assert c.assigned_to == "officer42"
    service.start_complaint(officer_token, filed.id)
    c = service.resolve_complaint(officer_token, filed.id, "Recovered")
    assert c.status == "resolved" and c.resolved_by == "officer42"

    with pytest.raises(TransitionError):
        service.reject_complaint(officer_token, filed.id, "late")

    stats = service.complaint_stats(officer_token)
    assert stats["resolved"] == 1
    assert stats["by_category"] == [{"category": "theft", "count": 1}]


def test_profile_and_location(service, session):
    assert service.profile(session.token).name == "Asha Rao"
    updated = service.update_location(session.token, 12.97, 77.59, "MG Road")
    assert updated.address == "MG Road"


def test_responder_login_issues_role_token(service, officer_token):
    claims = service.authenticate(f"Bearer {officer_token}")
    assert claims.subject == "officer42"
    assert claims.role == "officer"
    assert claims.phone is None

    session = service.responder_login({"username": "officer42", "password": PASSWORD})
    assert session.responder.last_login is not None
    assert "password_hash" not in session.to_dict()["user"]


def test_responder_login_wrong_password(service):
    service.responders.create(responder_account())
    with pytest.raises(AuthenticationError) as exc:
        service.responder_login({"username": "officer42", "password": "not-the-password"})
    assert exc.value.to_dict()["error"] == "INVALID_CREDENTIALS"


def test_responder_login_unknown_user(service):
    with pytest.raises(AuthenticationError):
        service.responder_login({"username": "ghost", "password": PASSWORD})


def test_inactive_responder_cannot_sign_in(service, admin_token):
    officer = service.register_responder(admin_token, responder_account())
    service.deactivate_responder(admin_token, officer.id)
    with pytest.raises(AuthenticationError):
        service.responder_login({"username": "officer42", "password": PASSWORD})
    assert [r.username for r in service.list_responders(admin_token)] == ["admin1"]


def test_only_admin_manages_responders(service, officer_token):
    with pytest.raises(ForbiddenError):
        service.register_responder(officer_token, responder_account("officer43"))
    with pytest.raises(ForbiddenError):
        service.responder_stats(officer_token)


def test_responder_role_must_be_a_responder_role(service, admin_token):
    with pytest.raises(InputError) as exc:
        service.register_responder(admin_token, responder_account("u1", role="citizen"))
    assert exc.value.field == "role"
    assert service.identity_stats(admin_token)["total"] == 0
    assert service.responder_stats(admin_token)["active"] == 1


def test_officer_cannot_read_identity_stats(service, officer_token):
    with pytest.raises(ForbiddenError):
        service.identity_stats(officer_token)


def test_cleanup_expired_otps(service):
    service.register(registration())
    issue = service.request_otp({"phoneNumber": PHONE}, now=1_000)
    assert issue.expires_at == 1_300
    assert service.cleanup_expired_otps(now=2_000) == 1
    assert service.cleanup_expired_otps(now=2_000) == 0
