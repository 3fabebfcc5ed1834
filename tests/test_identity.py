import time

import jwt
import pytest

from tasksync.core import crypto
from tasksync.core.errors import Unauthorized
from tasksync.core.identity import IdentityGate, TokenVerifier, extract_token, issue_token
from tasksync.core.store import UserRecord


# ---- fixtures ----

@pytest.fixture()
def users():
    return {
        "ann": UserRecord("ann", "Ann", "ann@example.com", True),
        "zed": UserRecord("zed", "Zed", "zed@example.com", False),
    }


@pytest.fixture()
def gate(users, secret):
    async def lookup(user_id):
        return users.get(user_id)

    return IdentityGate(TokenVerifier(secret=secret), lookup)


# ---- token verification ----

def test_verify_returns_user_claim(secret):
    token = issue_token("ann", secret=secret)
    assert TokenVerifier(secret=secret).verify(token) == "ann"


def test_sub_claim_is_accepted(secret):
    token = jwt.encode({"sub": "ann", "exp": int(time.time()) + 60}, secret, algorithm="HS256")
    assert TokenVerifier(secret=secret).verify(token) == "ann"


@pytest.mark.parametrize(
    "make",
    [
        lambda s: issue_token("ann", secret=s, ttl_s=-10),
        lambda s: issue_token("ann", secret=s + "-other"),
        lambda s: jwt.encode({"userId": "ann"}, s, algorithm="HS256"),
        lambda s: jwt.encode({"exp": int(time.time()) + 60}, s, algorithm="HS256"),
        lambda s: "not-a-jwt",
    ],
    ids=["expired", "wrong-secret", "no-exp", "no-user", "garbage"],
)
def test_bad_tokens_are_unauthorized(secret, make):
    with pytest.raises(Unauthorized):
        TokenVerifier(secret=secret).verify(make(secret))


def test_leeway_tolerates_small_clock_skew(secret):
    token = issue_token("ann", secret=secret, ttl_s=-2)
    assert TokenVerifier(secret=secret, leeway_s=30).verify(token) == "ann"


def test_verifier_requires_key_material():
    with pytest.raises(ValueError):
        TokenVerifier(secret=None)
    with pytest.raises(ValueError):
        TokenVerifier(algorithm="RS256")
    with pytest.raises(ValueError):
        TokenVerifier(algorithm="none", secret="x")


def test_rs256_round_trip(tmp_path):
    priv, pub = crypto.ensure_rsa_pair(tmp_path / "priv.pem", tmp_path / "pub.pem", key_size=2048)
    token = issue_token("ann", algorithm="RS256", private_key_pem=priv)
    verifier = TokenVerifier.from_config({"algorithm": "RS256", "public_key_file": str(tmp_path / "pub.pem")})
    assert verifier.verify(token) == "ann"
    assert crypto.accept_pubkey(pub)


def test_from_config_falls_back_to_env_secret(monkeypatch, secret):
    monkeypatch.setenv("TASKSYNC_JWT_SECRET", secret)
    verifier = TokenVerifier.from_config({})
    assert verifier.verify(issue_token("ann", secret=secret)) == "ann"


# ---- gate ----

@pytest.mark.asyncio
async def test_gate_resolves_active_user(gate, secret):
    identity = await gate.authenticate(issue_token("ann", secret=secret))
    assert (identity.user_id, identity.name, identity.email) == ("ann", "Ann", "ann@example.com")


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["zed", "ghost"])
async def test_gate_rejects_inactive_or_unknown_user(gate, secret, user_id):
    with pytest.raises(Unauthorized):
        await gate.authenticate(issue_token(user_id, secret=secret))


@pytest.mark.asyncio
async def test_gate_rejects_missing_token(gate):
    with pytest.raises(Unauthorized):
        await gate.authenticate(None)
    with pytest.raises(Unauthorized):
        await gate.authenticate("")


@pytest.mark.asyncio
async def test_lookup_failure_is_unauthorized(secret):
    async def lookup(_user_id):
        raise OSError("database away")

    gate = IdentityGate(TokenVerifier(secret=secret), lookup)
    with pytest.raises(Unauthorized):
        await gate.authenticate(issue_token("ann", secret=secret))


# ---- handshake parsing ----

def test_token_from_query_parameter_first():
    headers = {"Authorization": "Bearer from-header"}
    assert extract_token("/?token=from-query", headers) == "from-query"
    assert extract_token("/socket?x=1", headers) == "from-header"
    assert extract_token("/", {"Authorization": "Basic abc"}) is None
    assert extract_token("/?token=", None) is None
