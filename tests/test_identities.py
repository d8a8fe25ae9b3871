import pytest

from suraksha.errors import ConflictError, ForbiddenError, InputError, NotFoundError

from conftest import NOW, OTHER_PHONE, PHONE, registration


def test_register_creates_identity_and_keys(registry, key_store, key_pair):
    identity = registry.register(registration(), now=NOW)
    assert identity.phone_number == PHONE
    assert identity.name == "Asha Rao"
    assert identity.dob == "1990-04-01"
    assert identity.is_verified is False
    assert identity.public_key == key_pair.public_key_pem
    assert key_store.public_key(PHONE) == key_pair.public_key_pem
    assert key_store.fingerprint(PHONE) == key_pair.fingerprint


def test_to_dict_never_contains_private_key(citizen, key_pair):
    data = citizen.to_dict()
    assert "private_key" not in data
    assert key_pair.private_key_pem not in repr(data)


def test_duplicate_phone_conflicts(registry, citizen):
    with pytest.raises(ConflictError):
        registry.register(registration(phone="+1 234 567 890"), now=NOW)


def test_key_generation_failure_leaves_no_identity(db, key_store):
    from suraksha.errors import KeyGenerationError
    from suraksha.identities import IdentityRegistry
    from suraksha.keys import KeyPairProvider

    class FailingProvider(KeyPairProvider):
        def generate(self):
            raise KeyGenerationError("no entropy")

    registry = IdentityRegistry(db, FailingProvider(), key_store)
    with pytest.raises(KeyGenerationError):
        registry.register(registration(), now=NOW)
    assert not registry.exists(PHONE)


@pytest.mark.parametrize("payload, field", [
    ({"dob": "1990-04-01", "phoneNumber": PHONE}, "name"),
    ({"name": "  ", "dob": "1990-04-01", "phoneNumber": PHONE}, "name"),
    ({"name": "A", "dob": "not-a-date", "phoneNumber": PHONE}, "dob"),
    ({"name": "A", "dob": "2020-01-01", "phoneNumber": PHONE}, "dob"),
    ({"name": "A", "dob": "1990-04-01", "phoneNumber": "12"}, "phoneNumber"),
])
def test_invalid_registration(registry, payload, field):
    with pytest.raises(InputError) as exc:
        registry.register(payload, now=NOW)
    assert exc.value.field == field


def test_require_missing(registry):
    with pytest.raises(NotFoundError):
        registry.require(OTHER_PHONE)
    assert registry.get(OTHER_PHONE) is None


def test_record_login_sets_verified(registry, citizen):
    identity = registry.record_login(PHONE, now=NOW + 60)
    assert identity.is_verified is True
    assert identity.last_login == NOW + 60


def test_update_location(registry, citizen):
    identity = registry.update_location(PHONE, "12.97", 77.59, "MG Road", now=NOW + 5)
    assert (identity.latitude, identity.longitude) == (12.97, 77.59)
    assert identity.address == "MG Road"
    assert identity.location_updated_at == NOW + 5

    with pytest.raises(InputError):
        registry.update_location(PHONE, 91, 0)


def test_list_and_stats(registry, citizen):
    registry.register(registration(phone=OTHER_PHONE, name="Ravi"), now=NOW - 30 * 86400)
    registry.record_login(PHONE, now=NOW)

    assert [i.phone_number for i in registry.list_all()] == [PHONE, OTHER_PHONE]
    assert registry.stats(now=NOW) == {"total": 2, "verified": 1, "unverified": 1, "recent": 1}


class TestKeyCustody:
    def test_private_key_requires_responder(self, key_store, citizen, citizen_claims, officer_claims, key_pair):
        with pytest.raises(ForbiddenError):
            key_store.private_key(PHONE, citizen_claims)
        assert key_store.private_key(PHONE, officer_claims) == key_pair.private_key_pem

    def test_missing_owner(self, key_store, officer_claims):
        with pytest.raises(NotFoundError):
            key_store.private_key(OTHER_PHONE, officer_claims)
        with pytest.raises(NotFoundError):
            key_store.public_key(OTHER_PHONE)
        assert key_store.has_keys(OTHER_PHONE) is False
