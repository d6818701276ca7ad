"""
auth/oracle.py -- Account Status Oracle.

Answers "does this identity exist, and is it active" against the account
store. Consulted before any session is granted and again whenever an
authenticated session is re-checked.

Three answers must stay distinguishable:
  exists=True,  is_active=...  -- the row was read
  exists=False, error=None     -- legitimately no such account
  exists=False, error=transport -- the store could not answer; callers must
                                   not treat this as a negative security result

Calling check_status() with neither or both identifiers is a programming
error and raises ValueError immediately.
"""

from __future__ import annotations

import logging
from typing import Optional

from auth.errors import AuthError, ErrorKind
from auth.models import AccountStatus
from auth.store import AccountStore, StoreError

logger = logging.getLogger("orgaccess.auth.oracle")


class AccountStatusOracle:
    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def check_status(self, identity_id: Optional[str] = None, email: Optional[str] = None) -> AccountStatus:
        if (identity_id is None) == (email is None):
            raise ValueError("check_status() requires exactly one of identity_id or email")
        try:
            if identity_id is not None:
                record = self.store.get_account(identity_id)
            else:
                record = self.store.get_account_by_email(email)
        except StoreError as exc:
            logger.warning("Account status check failed: %s", exc)
            return AccountStatus(exists=False, is_active=False, error=AuthError(ErrorKind.transport))
        if record is None:
            return AccountStatus(exists=False, is_active=False)
        return AccountStatus(exists=True, is_active=record.is_active, account=record)
