"""Environment-backed auth adapter.

The real sign-in flow lives in the hosted auth service; the CLI only needs
to know who is acting, which it reads from the environment.
"""

from __future__ import annotations

import os
from typing import Optional

from core.models import AuthUser


class EnvAuth:
    """AuthPort that returns the user named by HELPMATE_USER_ID."""

    def __init__(self, override_user_id: Optional[str] = None) -> None:
        self._override_user_id = override_user_id

    def current_user(self) -> Optional[AuthUser]:
        user_id = self._override_user_id or os.getenv("HELPMATE_USER_ID")
        if not user_id:
            return None
        return AuthUser(id=user_id.strip(), email=os.getenv("HELPMATE_USER_EMAIL") or None)
