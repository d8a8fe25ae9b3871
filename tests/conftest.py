import pytest

from suraksha.db import Database
from suraksha.envelope import EnvelopeCrypto
from suraksha.identities import IdentityRegistry
from suraksha.keys import KeyPairProvider, KeyStore
from suraksha.responders import ResponderRegistry
from suraksha.service import SafetyService
from suraksha.tokens import Role, StaticSigningKeyProvider, TokenClaims, TokenIssuer

# Fixed clock for stores that take ``now=``
NOW = 1_750_000_000

PHONE = "+1234567890"
OTHER_PHONE = "+919876543210"

PASSWORD = "correct-horse-42"


class ReusedKeyPairProvider(KeyPairProvider):
    """Hands out one pre-generated key pair; RSA generation is slow."""

    def __init__(self, key_pair):
        super().__init__()
        self._key_pair = key_pair

    def generate(self):
        return self._key_pair


@pytest.fixture(scope="session")
def key_pair():
    return KeyPairProvider().generate()


@pytest.fixture(scope="session")
def other_key_pair():
    return KeyPairProvider().generate()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "suraksha.db")
    database.init()
    yield database
    database.close()


@pytest.fixture
def crypto():
    return EnvelopeCrypto()


@pytest.fixture
def key_store(db):
    return KeyStore(db)


@pytest.fixture
def registry(db, key_pair, key_store):
    return IdentityRegistry(db, ReusedKeyPairProvider(key_pair), key_store)


@pytest.fixture
def citizen(registry):
    return registry.register({"name": "Asha Rao", "dob": "1990-04-01", "phoneNumber": PHONE}, now=NOW)


@pytest.fixture
def issuer():
    return TokenIssuer(StaticSigningKeyProvider())


@pytest.fixture
def officer_claims():
    return TokenClaims(subject="officer42", name="Officer 42", role=Role.OFFICER.value, verified=True)


@pytest.fixture
def citizen_claims():
    return TokenClaims(subject=PHONE, name="Asha Rao", role=Role.CITIZEN.value, phone=PHONE, verified=True)


@pytest.fixture
def officer_token(issuer, officer_claims):
    return issuer.issue(officer_claims, 3600)


@pytest.fixture
def citizen_token(issuer, citizen_claims):
    return issuer.issue(citizen_claims, 3600)


@pytest.fixture
def responders(db):
    # Lowest bcrypt cost keeps hashing fast under test
    return ResponderRegistry(db, bcrypt_rounds=4)


@pytest.fixture
def service(db, key_pair, issuer, responders):
    return SafetyService(db, issuer, key_provider=ReusedKeyPairProvider(key_pair), responders=responders)


def registration(phone=PHONE, name="Asha Rao", dob="1990-04-01"):
    return {"name": name, "dob": dob, "phoneNumber": phone}


def responder_account(username="officer42", name="Officer 42", role="officer", password=PASSWORD, **extra):
    account = {"username": username, "password": password, "name": name, "role": role}
    account.update(extra)
    return account

