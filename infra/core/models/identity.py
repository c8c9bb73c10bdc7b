"""
Identity artifacts: the NATS trust chain as read back from disk.
"""

from __future__ import annotations

from pydantic import BaseModel


class IdentityArtifacts(BaseModel):
    """Operator, account and credential material for the NATS server.

    Subject IDs are taken from the decoded JWT payloads, never from
    filenames.
    """

    store_dir: str
    operator_id: str
    operator_jwt: str
    operator_jwt_path: str
    system_account_id: str
    system_account_jwt: str
    account_id: str
    account_jwt: str
    app_creds_path: str
    sys_creds_path: str

    def summary(self) -> dict[str, str]:
        """Public identifiers only, safe to print."""
        return {
            "store_dir": self.store_dir,
            "operator_id": self.operator_id,
            "operator_jwt_path": self.operator_jwt_path,
            "system_account_id": self.system_account_id,
            "account_id": self.account_id,
            "app_creds_path": self.app_creds_path,
            "sys_creds_path": self.sys_creds_path,
        }
