"""
Identity bootstrap: the NATS operator → account → user trust chain.

``IdentityBootstrap.ensure()`` is safe to call on every startup:

    1. compute the five artifact paths
    2. all five exist          → load only
    3. otherwise               → create dirs, fresh operator + accounts
    4. write user creds        → stale files removed first
    5. read back and verify    → IdentityArtifacts, or IdentityError

Only one bootstrap runs at a time in a process.  Subject IDs are always
read from the JWT payloads on disk, never from filenames or from the
keys just generated.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from infra.core.errors import IdentityError
from infra.core.models.config import RuntimeConfig
from infra.core.models.identity import IdentityArtifacts
from infra.core.persistence.state_file import write_atomic
from infra.core.services import nkeys

logger = logging.getLogger(__name__)

_BOOTSTRAP_LOCK = threading.Lock()

_SECRET_MODE = 0o600


@dataclass(frozen=True)
class IdentityPaths:
    """Where each artifact of the trust chain lives."""

    root: Path
    operator: str
    system_account: str
    account: str
    user: str
    system_user: str

    @property
    def store_dir(self) -> Path:
        return self.root / "store"

    @property
    def creds_dir(self) -> Path:
        return self.root / "creds"

    @property
    def keys_dir(self) -> Path:
        return self.root / "keys"

    @property
    def operator_jwt(self) -> Path:
        return self.store_dir / self.operator / f"{self.operator}.jwt"

    def account_jwt_path(self, account: str) -> Path:
        return self.store_dir / self.operator / "accounts" / account / f"{account}.jwt"

    @property
    def system_account_jwt(self) -> Path:
        return self.account_jwt_path(self.system_account)

    @property
    def account_jwt(self) -> Path:
        return self.account_jwt_path(self.account)

    @property
    def sys_creds(self) -> Path:
        return self.creds_dir / f"{self.system_user}.creds"

    @property
    def app_creds(self) -> Path:
        return self.creds_dir / f"{self.user}.creds"

    def artifacts(self) -> list[Path]:
        return [
            self.operator_jwt,
            self.system_account_jwt,
            self.account_jwt,
            self.sys_creds,
            self.app_creds,
        ]

    def complete(self) -> bool:
        return all(p.is_file() for p in self.artifacts())


class IdentityBootstrap:
    """Generates once, then verifies, the NATS trust chain."""

    def __init__(self, config: RuntimeConfig, root: Path | None = None):
        names = config.nats
        self.paths = IdentityPaths(
            root=root or config.nats_auth_dir,
            operator=names.operator,
            system_account=names.system_account,
            account=names.account,
            user=names.user,
            system_user=names.system_user,
        )

    def ensure(self) -> IdentityArtifacts:
        """Return the trust chain, generating it first if incomplete.

        Raises:
            IdentityError: if generation fails or any artifact is
                missing or malformed afterwards.
        """
        with _BOOTSTRAP_LOCK:
            if self.paths.complete():
                logger.debug("NATS identity present at %s", self.paths.root)
            else:
                logger.info("Generating NATS trust chain in %s", self.paths.root)
                try:
                    self._generate()
                except (OSError, nkeys.NKeyError) as e:
                    raise IdentityError(f"failed to generate NATS identity: {e}") from e
            return self._load()

    # ── Generation ──────────────────────────────────────────────

    def _generate(self) -> None:
        p = self.paths
        for d in (p.store_dir, p.creds_dir, p.keys_dir):
            d.mkdir(parents=True, exist_ok=True)
        p.keys_dir.chmod(0o700)

        # Trust root
        operator = nkeys.KeyPair.create(nkeys.PREFIX_OPERATOR)
        system_account = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)
        account = nkeys.KeyPair.create(nkeys.PREFIX_ACCOUNT)

        self._write_seed(p.operator, operator)
        self._write_seed(p.system_account, system_account)
        self._write_seed(p.account, account)

        write_atomic(
            p.operator_jwt,
            nkeys.operator_jwt(operator, p.operator, system_account.public_key),
        )
        write_atomic(
            p.system_account_jwt,
            nkeys.account_jwt(operator, system_account, p.system_account),
        )
        write_atomic(
            p.account_jwt,
            nkeys.account_jwt(operator, account, p.account, jetstream=True),
        )

        # Application creds first, then system creds
        self._write_creds(p.app_creds, account, p.user)
        self._write_creds(p.sys_creds, system_account, p.system_user)

    def _write_seed(self, name: str, key: nkeys.KeyPair) -> None:
        write_atomic(self.paths.keys_dir / f"{name}.nk", key.seed + "\n", mode=_SECRET_MODE)

    def _write_creds(self, path: Path, account: nkeys.KeyPair, user_name: str) -> None:
        path.unlink(missing_ok=True)
        user = nkeys.KeyPair.create(nkeys.PREFIX_USER)
        token = nkeys.user_jwt(account, user, user_name)
        write_atomic(path, nkeys.format_user_creds(token, user.seed), mode=_SECRET_MODE)
        logger.debug("Wrote creds for user %s to %s", user_name, path)

    # ── Loading ─────────────────────────────────────────────────

    def _load(self) -> IdentityArtifacts:
        p = self.paths
        operator_token = self._read_jwt(p.operator_jwt)
        system_token = self._read_jwt(p.system_account_jwt)
        account_token = self._read_jwt(p.account_jwt)

        operator_id = self._subject(operator_token, p.operator_jwt)
        system_id = self._subject(system_token, p.system_account_jwt)
        account_id = self._subject(account_token, p.account_jwt)

        for token, path in ((system_token, p.system_account_jwt), (account_token, p.account_jwt)):
            self._check_issuer(token, operator_id, path)

        self._check_creds(p.app_creds, account_id)
        self._check_creds(p.sys_creds, system_id)

        return IdentityArtifacts(
            store_dir=str(p.store_dir),
            operator_id=operator_id,
            operator_jwt=operator_token,
            operator_jwt_path=str(p.operator_jwt),
            system_account_id=system_id,
            system_account_jwt=system_token,
            account_id=account_id,
            account_jwt=account_token,
            app_creds_path=str(p.app_creds),
            sys_creds_path=str(p.sys_creds),
        )

    def _read_jwt(self, path: Path) -> str:
        try:
            token = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            raise IdentityError(f"cannot read {path}: {e}") from e
        if not token:
            raise IdentityError(f"{path} is empty")
        if not nkeys.verify_jwt(token):
            raise IdentityError(f"{path} does not hold a validly signed JWT")
        return token

    def _subject(self, token: str, path: Path) -> str:
        try:
            return nkeys.jwt_subject(token)
        except nkeys.NKeyError as e:
            raise IdentityError(f"{path}: {e}") from e

    def _check_issuer(self, token: str, issuer: str, path: Path) -> None:
        if nkeys.decode_jwt_claims(token).get("iss") != issuer:
            raise IdentityError(f"{path} was not issued by operator {issuer}")

    def _check_creds(self, path: Path, account_id: str) -> None:
        try:
            text = path.read_text(encoding="utf-8")
            token, seed = nkeys.parse_user_creds(text)
            nkeys.KeyPair.from_seed(seed)
            user_id = nkeys.jwt_subject(token)
        except (OSError, UnicodeDecodeError) as e:
            raise IdentityError(f"cannot read {path}: {e}") from e
        except nkeys.NKeyError as e:
            raise IdentityError(f"{path}: {e}") from e

        if not nkeys.verify_jwt(token):
            raise IdentityError(f"{path} holds an invalid user JWT")
        if nkeys.decode_jwt_claims(token).get("iss") != account_id:
            raise IdentityError(f"{path} user {user_id} was not issued by account {account_id}")
