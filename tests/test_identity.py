"""
Tests for nkeys encoding, NATS JWTs and the identity bootstrap.
"""

import os
import threading

import pytest

from infra.core.errors import IdentityError
from infra.core.services import nkeys
from infra.core.services.identity import IdentityBootstrap

# ── nkeys ────────────────────────────────────────────────────────────


class TestNKeys:
    def test_crc16_xmodem(self):
        assert nkeys.crc16(b"123456789") == 0x31C3

    @pytest.mark.parametrize("prefix,letter", [
        (nkeys.PREFIX_OPERATOR, "O"),
        (nkeys.PREFIX_ACCOUNT, "A"),
        (nkeys.PREFIX_USER, "U"),
    ])
    def test_public_key_prefix(self, prefix, letter):
        key = nkeys.KeyPair.create(prefix)
        assert key.public_key.startswith(letter)
        assert len(key.public_key) == 56

    def test_seed_restores_same_key(self):
        key = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)
        assert key.seed.startswith("SA")
        restored = nkeys.KeyPair.from_seed(key.seed)
        assert restored.public_key == key.public_key

    def test_sign_and_verify(self):
        key = nkeys.KeyPair.create(nkeys.PREFIX_USER)
        signature = key.sign(b"payload")
        assert nkeys.verify(key.public_key, b"payload", signature)
        assert not nkeys.verify(key.public_key, b"other", signature)

    def test_corrupted_key_rejected(self):
        key = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT).public_key
        broken = key[:-1] + ("A" if key[-1] != "A" else "B")
        with pytest.raises(nkeys.NKeyError):
            nkeys.decode_public_key(broken)

    def test_seed_rejected_as_public_key(self):
        seed = nkeys.KeyPair.create(nkeys.PREFIX_USER).seed
        with pytest.raises(nkeys.NKeyError):
            nkeys.decode_public_key(seed)


class TestJWT:
    def test_claims(self):
        operator = nkeys.KeyPair.create(nkeys.PREFIX_OPERATOR)
        account = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)
        token = nkeys.account_jwt(operator, account, "app", jetstream=True)

        claims = nkeys.decode_jwt_claims(token)
        assert claims["iss"] == operator.public_key
        assert claims["sub"] == account.public_key
        assert claims["name"] == "app"
        assert claims["nats"]["type"] == "account"
        assert claims["nats"]["version"] == 2
        assert claims["nats"]["limits"]["disk_storage"] == -1
        assert nkeys.verify_jwt(token)

    def test_jti_is_deterministic(self):
        operator = nkeys.KeyPair.create(nkeys.PREFIX_OPERATOR)
        a = nkeys.encode_jwt(operator, "SUB", "n", {"type": "x"}, issued_at=1)
        b = nkeys.encode_jwt(operator, "SUB", "n", {"type": "x"}, issued_at=1)
        assert nkeys.decode_jwt_claims(a)["jti"] == nkeys.decode_jwt_claims(b)["jti"]

    def test_tampered_payload_fails_verification(self):
        operator = nkeys.KeyPair.create(nkeys.PREFIX_OPERATOR)
        token = nkeys.operator_jwt(operator, "infra", "ASYS")
        header, _payload, sig = token.split(".")
        forged = nkeys.b64url_encode(b'{"iss":"%s","sub":"X"}' % operator.public_key.encode())
        assert not nkeys.verify_jwt(f"{header}.{forged}.{sig}")

    def test_garbage_is_not_a_jwt(self):
        assert not nkeys.verify_jwt("not-a-jwt")
        with pytest.raises(nkeys.NKeyError):
            nkeys.decode_jwt_claims("a.b")

    def test_non_object_header_and_issuer_rejected(self):
        enc = nkeys.b64url_encode
        header = enc(b'{"alg":"ed25519-nkey"}')
        numeric_issuer = enc(b'{"iss":123}')
        not_utf8 = enc(b"\xff\xfe")
        assert not nkeys.verify_jwt(enc(b"[]") + "." + enc(b"{}") + ".AA")
        assert not nkeys.verify_jwt(header + "." + numeric_issuer + ".AA")
        with pytest.raises(nkeys.NKeyError):
            nkeys.decode_jwt_claims(header + "." + not_utf8 + ".AA")

    def test_creds_roundtrip(self):
        account = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)
        user = nkeys.KeyPair.create(nkeys.PREFIX_USER)
        token = nkeys.user_jwt(account, user, "infra")
        text = nkeys.format_user_creds(token, user.seed)
        assert "-----BEGIN NATS USER JWT-----" in text
        assert nkeys.parse_user_creds(text) == (token, user.seed)

    def test_malformed_creds(self):
        with pytest.raises(nkeys.NKeyError):
            nkeys.parse_user_creds("nothing here")


# ── Bootstrap ────────────────────────────────────────────────────────


class TestIdentityBootstrap:
    def test_fresh_directory(self, config, tmp_path):
        root = tmp_path / "auth"
        artifacts = IdentityBootstrap(config, root=root).ensure()

        for rel in (
            "store/infra/infra.jwt",
            "store/infra/accounts/SYS/SYS.jwt",
            "store/infra/accounts/infra/infra.jwt",
            "creds/sys.creds",
            "creds/infra.creds",
        ):
            assert (root / rel).is_file(), rel

        assert artifacts.operator_id.startswith("O")
        assert artifacts.system_account_id.startswith("A")
        assert artifacts.account_id.startswith("A")
        assert artifacts.account_id != artifacts.system_account_id

        system_claims = nkeys.decode_jwt_claims(artifacts.system_account_jwt)
        assert system_claims["iss"] == artifacts.operator_id
        operator_claims = nkeys.decode_jwt_claims(artifacts.operator_jwt)
        assert operator_claims["nats"]["system_account"] == artifacts.system_account_id
        with open(artifacts.operator_jwt_path) as fh:
            assert fh.read().strip() == artifacts.operator_jwt

    def test_secret_permissions(self, config, tmp_path):
        root = tmp_path / "auth"
        IdentityBootstrap(config, root=root).ensure()
        assert (root / "creds" / "infra.creds").stat().st_mode & 0o777 == 0o600
        assert (root / "keys").stat().st_mode & 0o777 == 0o700

    def test_creds_issued_by_matching_account(self, config, tmp_path):
        artifacts = IdentityBootstrap(config, root=tmp_path / "auth").ensure()
        with open(artifacts.app_creds_path) as fh:
            token, _seed = nkeys.parse_user_creds(fh.read())
        assert nkeys.decode_jwt_claims(token)["iss"] == artifacts.account_id

    def test_idempotent(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        first = bootstrap.ensure()
        mtimes = {p: os.stat(p).st_mtime_ns for p in bootstrap.paths.artifacts()}

        second = bootstrap.ensure()
        assert second == first
        assert {p: os.stat(p).st_mtime_ns for p in bootstrap.paths.artifacts()} == mtimes

    def test_partial_store_is_regenerated(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        first = bootstrap.ensure()
        bootstrap.paths.sys_creds.unlink()

        second = bootstrap.ensure()
        assert bootstrap.paths.complete()
        assert second.operator_id != first.operator_id

    def test_malformed_jwt(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        bootstrap.paths.account_jwt.write_text("garbage")
        with pytest.raises(IdentityError):
            bootstrap.ensure()

    @pytest.mark.parametrize("header,claims", [
        ("[]", "{}"),
        ('{"typ":"JWT","alg":"ed25519-nkey"}', '{"iss":123,"sub":"OABC"}'),
        ('{"typ":"JWT","alg":"ed25519-nkey"}', "[1,2]"),
    ])
    def test_structurally_invalid_jwt(self, config, tmp_path, header, claims):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        token = f"{nkeys.b64url_encode(header.encode())}.{nkeys.b64url_encode(claims.encode())}.AA"
        bootstrap.paths.operator_jwt.write_text(token)
        with pytest.raises(IdentityError):
            bootstrap.ensure()

    def test_binary_jwt_file(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        bootstrap.paths.system_account_jwt.write_bytes(b"\xff\xfe\x00junk")
        with pytest.raises(IdentityError):
            bootstrap.ensure()

    def test_empty_jwt(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        bootstrap.paths.operator_jwt.write_text("")
        with pytest.raises(IdentityError, match="empty"):
            bootstrap.ensure()

    def test_malformed_creds(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        bootstrap.paths.app_creds.write_text("not creds")
        with pytest.raises(IdentityError):
            bootstrap.ensure()

    def test_foreign_account_jwt_rejected(self, config, tmp_path):
        bootstrap = IdentityBootstrap(config, root=tmp_path / "auth")
        bootstrap.ensure()
        stranger = nkeys.KeyPair.create(nkeys.PREFIX_OPERATOR)
        account = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)
        bootstrap.paths.account_jwt.write_text(nkeys.account_jwt(stranger, account, "infra"))
        with pytest.raises(IdentityError, match="not issued by operator"):
            bootstrap.ensure()

    def test_default_root(self, config):
        bootstrap = IdentityBootstrap(config)
        assert bootstrap.paths.root == config.nats_auth_dir

    def test_concurrent_callers_agree(self, config, tmp_path):
        root = tmp_path / "auth"
        results = []
        errors = []

        def worker():
            try:
                results.append(IdentityBootstrap(config, root=root).ensure())
            except IdentityError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len({r.operator_id for r in results}) == 1
        assert len({r.account_id for r in results}) == 1
