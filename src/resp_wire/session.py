"""
Session Handshake State

Tracks whether the current connection has authenticated and which database
it has selected. The clients consult it before every command and inject AUTH
and SELECT transparently; replacing the connection resets it.
"""

from datetime import datetime
from typing import Optional

# Commands that must reach the server before (or without) a login
LOGIN_EXEMPT = frozenset({"AUTH"})
# Commands that must not trigger a SELECT of their own
SELECT_EXEMPT = frozenset({"AUTH", "SELECT", "INFO"})

UNSELECTED = -1


class SessionState:
    """Login flag, login time and selected database of one connection"""

    def __init__(self):
        self.logged_in = False
        self.login_time: Optional[datetime] = None
        self.selected_db = UNSELECTED

    def reset(self) -> None:
        """Forget everything; called whenever the connection is replaced"""
        self.logged_in = False
        self.selected_db = UNSELECTED

    def needs_login(self, command: Optional[str]) -> bool:
        if self.logged_in:
            return False
        return not command or command.upper() not in LOGIN_EXEMPT

    def mark_logged_in(self) -> None:
        self.logged_in = True
        self.login_time = datetime.now()

    def mark_logged_out(self) -> None:
        self.logged_in = False

    def needs_select(self, command: Optional[str], db: int) -> bool:
        """True when `db` differs from the selected one and the command allows switching"""
        if self.selected_db == db:
            return False
        return not command or command.upper() not in SELECT_EXEMPT

    def mark_selected(self, db: int) -> None:
        self.selected_db = db
