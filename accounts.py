"""The signed-in user, as Flask-Login sees it."""
from typing import Optional

from flask_login import UserMixin

from roles import Role

# Session key holding the signed-in account between requests.
SESSION_KEY = 'account'


class SessionUser(UserMixin):
    """
    A portal user restored from the session cookie.

    The backend access token, email and role captured at login travel with
    the session, so loading the user costs no backend call.  The backend
    still checks the token on every request it serves.
    """

    def __init__(self, id, email: Optional[str], role, access_token: str):
        self.id = str(id)
        self.email = email
        self.role = Role.parse(role)
        self.access_token = access_token

    def to_session(self) -> dict:
        return {
            'id': self.id,
            'email': self.email,
            'role': self.role.value,
            'access_token': self.access_token,
        }

    @classmethod
    def from_session(cls, data, user_id) -> Optional['SessionUser']:
        if not isinstance(data, dict) or not data.get('access_token'):
            return None
        if str(data.get('id')) != str(user_id):
            return None
        return cls(data['id'], data.get('email'), data.get('role'), data['access_token'])

    def __repr__(self):
        return f'<SessionUser {self.id} {self.role.value}>'
